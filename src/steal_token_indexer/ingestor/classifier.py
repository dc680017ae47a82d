"""Transaction classification for the steal_token program.

A transaction is classified by the instruction marker its program logs
emit, then its participants are extracted with a kind-specific strategy:

- CREATE: ``from`` is the literal ``"System"``, ``to`` is the payer read
  from the first inner instruction's ``source``.
- STEAL: ``from``/``to`` come from the first inner lamport transfer; the
  amount is the sum of every inner lamport transfer in the transaction
  (payment to the previous holder, protocol fee and minter royalty).
- TRANSFER: ``from``/``to`` are read positionally from the outer program
  instruction's account list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar

from steal_token_indexer.ingestor.models import (
    EventKind,
    ParsedInstruction,
    ParsedTransaction,
    SystemTransfer,
    lamports_to_sol,
)

logger = logging.getLogger(__name__)

CREATE_SOURCE = "System"

# Checked in this order; the first marker found wins.
LOG_MARKERS: tuple[tuple[EventKind, str], ...] = (
    (EventKind.STEAL, "Instruction: Steal"),
    (EventKind.TRANSFER, "Instruction: Transfer"),
    (EventKind.CREATE, "Instruction: Initialize"),
)

_INVOKE_RE = re.compile(r"^Program (\S+) invoke \[\d+\]")
_EXIT_RE = re.compile(r"^Program (\S+) (?:success|failed)")


class ClassificationError(Exception):
    """Raised when a classified transaction lacks the fields its kind needs."""


@dataclass(frozen=True)
class AccountIndices:
    """Positions of participants in the program instruction's account list."""

    entity: int = 0
    transfer_from: int = 1
    transfer_to: int = 2


@dataclass(frozen=True)
class CreateInstruction:
    kind: ClassVar[EventKind] = EventKind.CREATE

    entity_id: str
    payer: str

    @property
    def from_address(self) -> str:
        return CREATE_SOURCE

    @property
    def to_address(self) -> str:
        return self.payer

    @property
    def amount(self) -> Decimal | None:
        return None


@dataclass(frozen=True)
class StealInstruction:
    """A steal; ``transfers`` holds every inner lamport transfer in order."""

    kind: ClassVar[EventKind] = EventKind.STEAL

    entity_id: str
    transfers: tuple[SystemTransfer, ...]

    def __post_init__(self) -> None:
        if not self.transfers:
            raise ClassificationError("Steal instruction without inner lamport transfers")

    @property
    def from_address(self) -> str:
        # The first inner transfer is taken as the participant pair. The program
        # does not guarantee which leg comes first, so this attribution may not
        # name the previous holder if the transfer order changes.
        return self.transfers[0].source

    @property
    def to_address(self) -> str:
        return self.transfers[0].destination

    @property
    def total_lamports(self) -> int:
        return sum(t.lamports for t in self.transfers)

    @property
    def amount(self) -> Decimal | None:
        return lamports_to_sol(self.total_lamports)


@dataclass(frozen=True)
class TransferInstruction:
    kind: ClassVar[EventKind] = EventKind.TRANSFER

    entity_id: str
    sender: str
    recipient: str

    @property
    def from_address(self) -> str:
        return self.sender

    @property
    def to_address(self) -> str:
        return self.recipient

    @property
    def amount(self) -> Decimal | None:
        return None


ProgramInstruction = CreateInstruction | StealInstruction | TransferInstruction


def _program_log_lines(logs: tuple[str, ...] | list[str], program_id: str) -> list[str]:
    """Keep only log lines emitted while ``program_id`` is the executing program."""
    stack: list[str] = []
    lines: list[str] = []
    for line in logs:
        invoke = _INVOKE_RE.match(line)
        if invoke:
            stack.append(invoke.group(1))
            continue
        exit_ = _EXIT_RE.match(line)
        if exit_:
            if stack:
                stack.pop()
            continue
        if stack and stack[-1] == program_id:
            lines.append(line)
    return lines


def classify_logs(
    logs: tuple[str, ...] | list[str],
    *,
    program_id: str | None = None,
) -> EventKind:
    """Classify a transaction by its log markers.

    Args:
        logs: The transaction's log messages.
        program_id: If given, only lines emitted inside this program's
            invocation frames are considered, so markers logged by other
            programs (e.g. an SPL token transfer) are ignored.
    """
    lines = _program_log_lines(logs, program_id) if program_id else list(logs)
    for kind, marker in LOG_MARKERS:
        if any(marker in line for line in lines):
            return kind
    return EventKind.UNKNOWN


def _find_program_instruction(tx: ParsedTransaction, program_id: str) -> tuple[int, ParsedInstruction]:
    for index, ix in enumerate(tx.instructions):
        if ix.program_id == program_id:
            return index, ix
    raise ClassificationError(f"No outer instruction for program {program_id}")


def _account_at(ix: ParsedInstruction, index: int, what: str) -> str:
    if index >= len(ix.accounts):
        raise ClassificationError(
            f"{what} account index {index} out of range ({len(ix.accounts)} accounts)"
        )
    return ix.accounts[index]


def _extract_create(
    tx: ParsedTransaction,
    outer_index: int,
    entity_id: str,
) -> CreateInstruction:
    groups = [g for g in tx.inner_instructions if g.index == outer_index] or list(tx.inner_instructions)
    if not groups or not groups[0].instructions:
        raise ClassificationError("Create instruction without inner instructions")
    info = groups[0].instructions[0].info
    if not info or not info.get("source"):
        raise ClassificationError("First inner instruction of create has no source")
    return CreateInstruction(entity_id=entity_id, payer=str(info["source"]))


def _extract_steal(tx: ParsedTransaction, entity_id: str) -> StealInstruction:
    transfers = tuple(
        transfer
        for group in tx.inner_instructions
        for ix in group.instructions
        if (transfer := ix.as_system_transfer()) is not None
    )
    return StealInstruction(entity_id=entity_id, transfers=transfers)


def extract_instruction(
    kind: EventKind,
    tx: ParsedTransaction,
    *,
    program_id: str,
    indices: AccountIndices | None = None,
) -> ProgramInstruction:
    """Extract the typed instruction for an already-classified transaction.

    Raises:
        ClassificationError: If ``kind`` is UNKNOWN or a required field is missing.
    """
    indices = indices or AccountIndices()
    outer_index, outer = _find_program_instruction(tx, program_id)
    entity_id = _account_at(outer, indices.entity, "entity")

    if kind == EventKind.CREATE:
        return _extract_create(tx, outer_index, entity_id)
    if kind == EventKind.STEAL:
        return _extract_steal(tx, entity_id)
    if kind == EventKind.TRANSFER:
        return TransferInstruction(
            entity_id=entity_id,
            sender=_account_at(outer, indices.transfer_from, "transfer sender"),
            recipient=_account_at(outer, indices.transfer_to, "transfer recipient"),
        )
    raise ClassificationError(f"Cannot extract an instruction of kind {kind.value}")


def classify_transaction(
    tx: ParsedTransaction,
    *,
    program_id: str,
    indices: AccountIndices | None = None,
) -> ProgramInstruction | None:
    """Classify and extract a program transaction.

    Returns:
        The typed instruction, or None when the transaction is UNKNOWN or
        could not be parsed (logged and dropped).
    """
    kind = classify_logs(tx.log_messages, program_id=program_id)
    if kind == EventKind.UNKNOWN:
        logger.debug("Transaction %s has no known instruction marker", tx.signature)
        return None
    try:
        return extract_instruction(kind, tx, program_id=program_id, indices=indices)
    except (ClassificationError, KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Dropping %s transaction %s: %s", kind.value, tx.signature, e)
        return None
