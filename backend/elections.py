"""Election lifecycle: drafts in the document store, contracts on the ledger.

An election is a draft until its record carries an ``address``; deployment
sets it exactly once. Whether a deployed election is upcoming, ongoing or
previous is never stored, it is derived from the clock on every read.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import settings
from errors import (
    AuthorizationError,
    DeploymentInProgress,
    ElectionNotDeployed,
    LedgerRejection,
    LedgerUnavailable,
    NotFoundError,
    ValidationError,
    classify_rejection,
)
from smart_contract import MAX_CANDIDATE_NAME_BYTES, MAX_CANDIDATES
from timecodec import epoch_to_human, human_to_epoch
from voters import ValidationOutcome, VoterValidationEngine, normalize_voter_ids, voter_list

logger = logging.getLogger(__name__)

UPCOMING = "upcoming"
ONGOING = "ongoing"
PREVIOUS = "previous"
BUCKETS = (UPCOMING, ONGOING, PREVIOUS)

DEPLOYED = "DEPLOYED"
ALREADY_DEPLOYED = "ALREADY_DEPLOYED"

REQUIRED_FOR_DEPLOY = ("candidates", "startTime", "endTime", "validVoters")
UPDATABLE_FIELDS = ("electionName", "candidates", "startTime", "endTime", "validVoters")


def classify(record: dict[str, Any], now: float) -> str:
    if not record.get("address") or now < int(record["startTime"]):
        return UPCOMING
    if now >= int(record["endTime"]):
        return PREVIOUS
    return ONGOING


def _as_epoch(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    return human_to_epoch(value)


def _check_window(start_time: int, end_time: int) -> None:
    if start_time >= end_time:
        raise ValidationError("startTime must be before endTime")


def _check_candidates(candidates: Any) -> list[str]:
    if not isinstance(candidates, list) or not candidates:
        raise ValidationError("At least one candidate is required")
    if len(candidates) > MAX_CANDIDATES:
        raise ValidationError(f"An election can have at most {MAX_CANDIDATES} candidates")
    names = []
    for candidate in candidates:
        name = candidate.get("name") if isinstance(candidate, dict) else candidate
        name = str(name or "").strip()
        if not name:
            raise ValidationError("Candidate names must not be empty")
        if len(name.encode("utf-8")) > MAX_CANDIDATE_NAME_BYTES:
            raise ValidationError(f"Candidate names are limited to {MAX_CANDIDATE_NAME_BYTES} bytes")
        names.append(name)
    return names


def _check_deployable(record: dict[str, Any]) -> None:
    missing = [name for name in REQUIRED_FOR_DEPLOY if not record.get(name)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def organizer_view(record: dict[str, Any]) -> dict[str, Any]:
    view = {name: value for name, value in record.items() if name != "deployClaim"}
    view["startTime"] = epoch_to_human(record["startTime"])
    view["endTime"] = epoch_to_human(record["endTime"])
    return view


def voter_view(record: dict[str, Any]) -> dict[str, Any]:
    view = {
        "candidates": record.get("candidates", []),
        "startTime": epoch_to_human(record["startTime"]),
        "endTime": epoch_to_human(record["endTime"]),
        "electionName": record.get("electionName"),
        "organizerName": record.get("organizerName"),
    }
    if record.get("address"):
        view["address"] = record["address"]
        view["appID"] = record.get("appID")
    return view


@dataclass
class DeployResult:
    status: str
    election_id: str
    address: str
    app_id: int | None
    invalid_voter_ids: list[str] = field(default_factory=list)
    ungranted_voter_ids: list[str] = field(default_factory=list)
    grant_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "electionID": self.election_id,
            "electionAddress": self.address,
            "appID": self.app_id,
            "invalidVoterIDs": self.invalid_voter_ids,
            "ungrantedVoterIDs": self.ungranted_voter_ids,
            "grantError": self.grant_error,
        }


class ElectionLifecycleManager:
    def __init__(
        self,
        store,
        identity,
        ledger=None,
        engine: VoterValidationEngine | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.identity = identity
        self.ledger = ledger
        self.engine = engine or VoterValidationEngine(identity, ledger)
        self.clock = clock

    def _ledger(self):
        if self.ledger is None:
            raise LedgerUnavailable()
        return self.ledger

    def _load(self, election_id: str) -> dict[str, Any]:
        record = self.store.read(f"elections/{election_id}")
        if not isinstance(record, dict):
            raise NotFoundError("Election not found")
        return record

    def _contract(self, record: dict[str, Any]):
        if not record.get("address") or record.get("appID") is None:
            raise ElectionNotDeployed()
        return self._ledger().contract(record["appID"])

    @staticmethod
    def _check_owner(record: dict[str, Any], organizer_id: str) -> None:
        if record.get("organizerID") != organizer_id:
            raise AuthorizationError()

    def _account(self, user_id: str) -> int:
        account = self.identity.account_for(user_id)
        if account is None:
            raise NotFoundError("Unknown user")
        return account

    def create_draft(
        self,
        organizer_id: str,
        name: str,
        candidates: list[Any],
        start_time: Any,
        end_time: Any,
        valid_voters: list[Any],
    ) -> str:
        organizer = self.identity.require_user(organizer_id)
        if not organizer.is_organizer:
            raise AuthorizationError()
        start, end = _as_epoch(start_time), _as_epoch(end_time)
        _check_window(start, end)
        election_id = self.store.push(
            "elections",
            {
                "electionName": name,
                "organizerName": organizer.name,
                "organizerID": organizer_id,
                "candidates": _check_candidates(candidates),
                "startTime": start,
                "endTime": end,
                "validVoters": normalize_voter_ids(valid_voters),
            },
        )
        logger.info("Organizer %s created draft election %s", organizer_id, election_id)
        return election_id

    def get_view(self, election_id: str, requester_id: str, is_organizer: bool) -> dict[str, Any]:
        record = self._load(election_id)
        if is_organizer:
            self._check_owner(record, requester_id)
            return organizer_view(record)

        view = voter_view(record)
        view["voted"] = False
        if record.get("address"):
            address = self.identity.address_for(requester_id)
            if address is None:
                raise NotFoundError("Unknown user")
            ballot = self._contract(record).voters(address)
            if ballot.valid_voter and ballot.voted:
                view["voted"] = True
                view["votedFor"] = ballot.voted_for
        return view

    def list_for_user(self, user_id: str, is_organizer: bool, bucket: str) -> dict[str, dict[str, Any]]:
        """Elections visible to ``user_id`` that currently fall in ``bucket``.

        Voters only see deployed elections where the contract confirms their
        right to vote, which costs one ledger read per deployed election.
        """
        if bucket not in BUCKETS:
            raise ValidationError(f"bucket must be one of {', '.join(BUCKETS)}")
        elections = self.store.read("elections") or {}
        visible: dict[str, dict[str, Any]] = {}

        if is_organizer:
            for election_id, record in elections.items():
                if record.get("organizerID") == user_id:
                    visible[election_id] = record
        else:
            address = self.identity.address_for(user_id)
            if address is None:
                raise NotFoundError("Unknown user")
            for election_id, record in elections.items():
                if not record.get("address"):
                    continue
                if self._contract(record).voters(address).valid_voter:
                    visible[election_id] = record

        now = self.clock()
        render = organizer_view if is_organizer else voter_view
        return {
            election_id: render(record)
            for election_id, record in visible.items()
            if classify(record, now) == bucket
        }

    def _claim(self, election_id: str) -> dict[str, Any] | None:
        """Take the per-election deployment claim.

        Returns ``None`` when the election turned out to be deployed already.
        """
        path = f"elections/{election_id}"
        claim = {"token": uuid.uuid4().hex, "claimedAt": int(self.clock())}
        if self.store.update_if(path, {"deployClaim": claim}, absent=("address", "deployClaim")):
            return claim

        current = self._load(election_id)
        if current.get("address"):
            return None
        held = current.get("deployClaim")
        if held and int(self.clock()) - int(held.get("claimedAt", 0)) >= settings.DEPLOY_CLAIM_TTL_SECONDS:
            if self.store.update_if(path, {"deployClaim": claim}, absent=("address",), expected={"deployClaim": held}):
                logger.warning("Took over stale deployment claim on election %s", election_id)
                return claim
        raise DeploymentInProgress()

    def _already_deployed(self, election_id: str) -> DeployResult:
        record = self._load(election_id)
        return DeployResult(ALREADY_DEPLOYED, election_id, record["address"], record.get("appID"))

    def deploy(self, election_id: str, organizer_id: str) -> DeployResult:
        record = self._load(election_id)
        if record.get("address"):
            return self._already_deployed(election_id)
        self._check_owner(record, organizer_id)
        _check_deployable(record)
        organizer_account = self._account(organizer_id)
        ledger = self._ledger()

        claim = self._claim(election_id)
        if claim is None:
            return self._already_deployed(election_id)
        path = f"elections/{election_id}"
        try:
            # drafts are frozen once claimed, so this copy is what goes on chain
            record = self._load(election_id)
            _check_deployable(record)
            with ledger.signer(organizer_account) as signer:
                contract = ledger.deploy(
                    _check_candidates(record["candidates"]),
                    int(record["endTime"]),
                    int(record["startTime"]),
                    signer,
                )
        except Exception:
            self.store.update_if(path, {"deployClaim": None}, expected={"deployClaim": claim})
            raise

        persisted = self.store.update_if(
            path,
            {"address": contract.address, "appID": contract.app_id, "deployClaim": None},
            absent=("address",),
            expected={"deployClaim": claim},
        )
        if not persisted:
            logger.error(
                "Lost deployment claim on election %s; application %d is orphaned",
                election_id,
                contract.app_id,
            )
            if self._load(election_id).get("address"):
                return self._already_deployed(election_id)
            raise DeploymentInProgress()
        logger.info("Election %s deployed as application %d", election_id, contract.app_id)

        resolved, outcome = self.engine.resolve(voter_list(record), contract, organizer_account)
        self.store.update(path, {"grantedVoters": list(resolved.addresses)})
        return DeployResult(
            DEPLOYED,
            election_id,
            contract.address,
            contract.app_id,
            outcome.invalid_ids,
            outcome.ungranted_ids,
            outcome.failure.message if outcome.failure else None,
        )

    def validate_voters(self, election_id: str, organizer_id: str, voter_ids: list[Any]) -> ValidationOutcome:
        """Grant voting rights on a deployed election to more voters.

        A grant the ledger stops part way is reported through the outcome;
        one that grants nobody is raised.
        """
        record = self._load(election_id)
        self._check_owner(record, organizer_id)
        contract = self._contract(record)
        outcome = self.engine.validate(voter_ids, contract, self._account(organizer_id))

        listed = normalize_voter_ids(record.get("validVoters"))
        listed += [voter_id for voter_id in normalize_voter_ids(voter_ids) if voter_id not in listed]
        granted = list(record.get("grantedVoters") or [])
        granted += [address for address in outcome.granted_addresses if address not in granted]
        self.store.update(f"elections/{election_id}", {"validVoters": listed, "grantedVoters": granted})
        if outcome.failure is not None and not outcome.granted_addresses:
            raise outcome.failure
        return outcome

    def update(self, election_id: str, organizer_id: str, fields: dict[str, Any]) -> str:
        record = self._load(election_id)
        self._check_owner(record, organizer_id)
        if record.get("address") or record.get("deployClaim"):
            raise ValidationError("Election has already been deployed and can no longer be changed")

        updates: dict[str, Any] = {}
        for name in UPDATABLE_FIELDS:
            if fields.get(name) is None:
                continue
            value = fields[name]
            if name == "candidates":
                value = _check_candidates(value)
            elif name in ("startTime", "endTime"):
                value = _as_epoch(value)
            elif name == "validVoters":
                value = normalize_voter_ids(value)
            updates[name] = value
        _check_window(
            updates.get("startTime", int(record["startTime"])),
            updates.get("endTime", int(record["endTime"])),
        )
        if updates:
            if not self.store.update_if(f"elections/{election_id}", updates, absent=("address", "deployClaim")):
                raise ValidationError("Election has already been deployed and can no longer be changed")
            logger.info("Election %s updated: %s", election_id, ", ".join(sorted(updates)))
        return election_id

    def cast_vote(self, election_id: str, voter_id: str, is_organizer: bool, candidate_id: int) -> str:
        if is_organizer:
            raise AuthorizationError()
        account = self._account(voter_id)
        contract = self._contract(self._load(election_id))
        try:
            with self._ledger().signer(account) as signer:
                tx_id = contract.vote(int(candidate_id), signer)
        except LedgerRejection as exc:
            logger.warning("Vote by %s on election %s rejected: %s", voter_id, election_id, exc.reason)
            raise classify_rejection(exc.reason) from exc
        logger.info("Vote by %s on election %s submitted (tx %s)", voter_id, election_id, tx_id)
        return tx_id

    def get_results(self, election_id: str, requester_id: str) -> dict[str, Any]:
        self._account(requester_id)
        contract = self._contract(self._load(election_id))
        try:
            results = []
            total_votes = 0
            for index in range(contract.number_of_candidates()):
                candidate = contract.candidates(index)
                results.append({"name": candidate.name, "votes": candidate.vote_count})
                total_votes += candidate.vote_count
            winner = contract.get_winner()
        except LedgerRejection as exc:
            raise classify_rejection(exc.reason) from exc
        return {"totalVotes": total_votes, "results": results, "winner": winner}
