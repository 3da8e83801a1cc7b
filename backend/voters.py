"""Voter lists and the batched grant of on-chain voting rights.

Before deployment an election only knows voter ids (``Unresolved``). Once
its contract exists the ids that could be resolved become ledger addresses
holding the right to vote (``Resolved``). Deployment performs that one-way
conversion.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from errors import ElectionError, GrantInterrupted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unresolved:
    voter_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Resolved:
    addresses: tuple[str, ...] = ()


VoterList = Union[Unresolved, Resolved]


def normalize_voter_ids(raw: Any) -> list[str]:
    """Flatten stored or submitted voter lists into unique ids, in order.

    Entries may be plain ids or ``{"voterID": ...}`` objects, and the list
    may come back from the store as a mapping of index to entry.
    """
    if not raw:
        return []
    entries: Iterable[Any] = raw.values() if isinstance(raw, dict) else raw
    voter_ids: list[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            entry = entry.get("voterID")
        if entry is None:
            continue
        voter_id = str(entry).strip()
        if voter_id and voter_id not in voter_ids:
            voter_ids.append(voter_id)
    return voter_ids


def voter_list(record: dict[str, Any]) -> VoterList:
    if record.get("address"):
        return Resolved(tuple(record.get("grantedVoters") or ()))
    return Unresolved(tuple(normalize_voter_ids(record.get("validVoters"))))


@dataclass
class ValidationOutcome:
    invalid_ids: list[str] = field(default_factory=list)
    granted_addresses: list[str] = field(default_factory=list)
    tx_ids: list[str] = field(default_factory=list)
    # resolvable ids whose grant did not go through, and why
    ungranted_ids: list[str] = field(default_factory=list)
    failure: ElectionError | None = None


class VoterValidationEngine:
    def __init__(self, identity, ledger) -> None:
        self.identity = identity
        self.ledger = ledger

    def validate(self, voter_ids: Iterable[Any], contract, organizer_account: int) -> ValidationOutcome:
        """Grant voting rights to every resolvable id.

        Unregistered ids are reported back instead of failing the batch, and
        so are ids whose grant the ledger did not confirm.
        """
        outcome = ValidationOutcome()
        resolved: dict[str, list[str]] = {}
        for voter_id in normalize_voter_ids(list(voter_ids)):
            address = self.identity.address_for(voter_id)
            if address is None:
                outcome.invalid_ids.append(voter_id)
                continue
            resolved.setdefault(address, []).append(voter_id)

        addresses = list(resolved)
        if addresses:
            with self.ledger.signer(organizer_account) as signer:
                try:
                    outcome.tx_ids = contract.give_right_to_vote(addresses, signer)
                    outcome.granted_addresses = addresses
                except GrantInterrupted as exc:
                    outcome.tx_ids = exc.tx_ids
                    outcome.granted_addresses = [address for address in addresses if address in exc.granted]
                    outcome.failure = exc.cause
                except ElectionError as exc:
                    outcome.failure = exc
        else:
            logger.info("No resolvable voters for app %s; nothing granted", contract.app_id)

        if outcome.failure is not None:
            outcome.ungranted_ids = [
                voter_id
                for address in addresses
                if address not in outcome.granted_addresses
                for voter_id in resolved[address]
            ]
            logger.error(
                "Granting voting rights on app %s stopped with %d voters left: %s",
                contract.app_id,
                len(outcome.ungranted_ids),
                outcome.failure.message,
            )
        if outcome.invalid_ids:
            logger.warning(
                "%d voter ids could not be resolved for app %s",
                len(outcome.invalid_ids),
                contract.app_id,
            )
        return outcome

    def resolve(self, voters: VoterList, contract, organizer_account: int) -> tuple[Resolved, ValidationOutcome]:
        if isinstance(voters, Resolved):
            return voters, ValidationOutcome()
        outcome = self.validate(voters.voter_ids, contract, organizer_account)
        return Resolved(tuple(outcome.granted_addresses)), outcome
