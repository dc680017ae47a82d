"""Test that the project setup is working correctly."""

import steal_token_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert steal_token_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from steal_token_indexer import chain
    from steal_token_indexer import consumer
    from steal_token_indexer import ingestor
    from steal_token_indexer import queue
    from steal_token_indexer import storage

    # Just verify imports work
    assert chain is not None
    assert consumer is not None
    assert ingestor is not None
    assert queue is not None
    assert storage is not None
