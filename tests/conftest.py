import copy
from contextlib import contextmanager
from typing import Any

import pytest

from document_store import new_push_key, split_path
from elections import ElectionLifecycleManager
from errors import GrantInterrupted, LedgerRejection
from identity import IdentityResolver
from ledger import CandidateRecord, VoterRecord
from timecodec import human_to_epoch

NOW = human_to_epoch("2024-01-01T12:00:00Z")


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeDocumentStore:
    """Dict-backed stand-in with the same path semantics as DocumentStore."""

    def __init__(self) -> None:
        self.data: dict[str, dict[str, Any]] = {}

    def ensure_schema(self) -> None:
        pass

    def ping(self) -> bool:
        return True

    def _document(self, path: str) -> tuple[dict[str, Any], str, list[str]]:
        collection, key, rest = split_path(path)
        if key is None:
            raise ValueError("document path expected")
        return self.data.setdefault(collection, {}), key, rest

    def read(self, path: str) -> Any:
        collection, key, rest = split_path(path)
        documents = self.data.get(collection, {})
        if key is None:
            return copy.deepcopy(documents) or None
        node: Any = documents.get(key)
        for part in rest:
            if not isinstance(node, dict):
                return None
            node = node.get(part)
        return copy.deepcopy(node)

    def write(self, path: str, value: Any) -> None:
        documents, key, rest = self._document(path)
        if not rest:
            if value is None:
                documents.pop(key, None)
            else:
                documents[key] = copy.deepcopy(value)
            return
        node = documents.setdefault(key, {})
        for part in rest[:-1]:
            node = node.setdefault(part, {})
        if value is None:
            node.pop(rest[-1], None)
        else:
            node[rest[-1]] = copy.deepcopy(value)

    def update(self, path: str, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            self.write(f"{path}/{name}", value)

    def push(self, collection: str, value: Any) -> str:
        key = new_push_key()
        self.write(f"{collection}/{key}", value)
        return key

    def create(self, path: str, value: Any) -> bool:
        documents, key, _ = self._document(path)
        if key in documents:
            return False
        documents[key] = copy.deepcopy(value)
        return True

    def update_if(self, path, fields, absent=(), expected=None) -> bool:
        documents, key, _ = self._document(path)
        document = documents.get(key)
        if document is None:
            return False
        if any(name in document for name in absent):
            return False
        for name, value in (expected or {}).items():
            if document.get(name) != value:
                return False
        self.update(path, fields)
        return True

    def increment(self, path: str, field: str, start: int) -> int:
        documents, key, _ = self._document(path)
        document = documents.setdefault(key, {})
        document[field] = document[field] + 1 if field in document else start
        return document[field]


class FakeSigner:
    def __init__(self, address: str) -> None:
        self.address = address


class FakeContract:
    def __init__(self, ledger, app_id, candidates, start_time, end_time, organizer) -> None:
        self.ledger = ledger
        self.app_id = app_id
        self.address = f"APP{app_id}"
        self.tx_id = f"CREATE{app_id}"
        self.names = list(candidates)
        self.votes = [0] * len(self.names)
        self.start_time = start_time
        self.end_time = end_time
        self.organizer = organizer
        self.ballots: dict[str, int | None] = {}
        self.grants: list[list[str]] = []
        self.reject_with: str | None = None
        # (addresses granted before failing, error) for the next grant
        self.grant_failure: tuple[int, Exception] | None = ledger.grant_failure

    def voters(self, address: str) -> VoterRecord:
        self.ledger.reads += 1
        if address not in self.ballots:
            return VoterRecord(valid_voter=False, voted=False, voted_for=0)
        ballot = self.ballots[address]
        return VoterRecord(valid_voter=True, voted=ballot is not None, voted_for=ballot or 0)

    def give_right_to_vote(self, addresses, signer) -> list[str]:
        if signer.address != self.organizer:
            raise LedgerRejection("Only the organizer can give right to vote")
        addresses = list(addresses)
        failure, self.grant_failure = self.grant_failure, None
        if failure is not None:
            addresses = addresses[: failure[0]]
        tx_ids = []
        if addresses:
            self.grants.append(addresses)
            for address in addresses:
                self.ballots.setdefault(address, None)
            tx_ids.append(f"GRANT{len(self.grants)}")
        if failure is not None:
            raise GrantInterrupted(failure[1], addresses, tx_ids)
        return tx_ids

    def vote(self, candidate_id: int, signer) -> str:
        if self.reject_with:
            raise LedgerRejection(self.reject_with)
        now = self.ledger.clock()
        if now < self.start_time:
            raise LedgerRejection("Election has not started")
        if now >= self.end_time:
            raise LedgerRejection("Election has ended")
        if signer.address not in self.ballots:
            raise LedgerRejection("Has no right to vote")
        if self.ballots[signer.address] is not None:
            raise LedgerRejection("Already voted")
        if not 0 <= candidate_id < len(self.names):
            raise LedgerRejection("Invalid candidate")
        self.votes[candidate_id] += 1
        self.ballots[signer.address] = candidate_id
        return f"VOTE{self.app_id}-{sum(self.votes)}"

    def number_of_candidates(self) -> int:
        return len(self.names)

    def candidates(self, index: int) -> CandidateRecord:
        return CandidateRecord(name=self.names[index], vote_count=self.votes[index])

    def get_winner(self) -> str:
        if self.ledger.clock() < self.end_time:
            raise LedgerRejection("Election end time has not passed")
        best = max(range(len(self.names)), key=lambda index: (self.votes[index], -index))
        return self.names[best]


class FakeLedger:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.contracts: dict[int, FakeContract] = {}
        self.deploy_calls = 0
        self.fail_deploy: Exception | None = None
        self.funded: list[tuple[str, int]] = []
        self.reads = 0
        self.open_signers = 0
        self.next_app_id = 1000
        self.grant_failure: tuple[int, Exception] | None = None

    def resolve_address(self, account_index: int) -> str:
        return f"ADDR{account_index}"

    @contextmanager
    def signer(self, account_index: int):
        self.open_signers += 1
        try:
            yield FakeSigner(self.resolve_address(account_index))
        finally:
            self.open_signers -= 1

    def fund(self, address: str, amount: int) -> str:
        self.funded.append((address, amount))
        return f"FUND{len(self.funded)}"

    def deploy(self, candidates, end_time, start_time, signer) -> FakeContract:
        self.deploy_calls += 1
        if self.fail_deploy is not None:
            raise self.fail_deploy
        self.next_app_id += 1
        contract = FakeContract(self, self.next_app_id, candidates, start_time, end_time, signer.address)
        self.contracts[contract.app_id] = contract
        return contract

    def contract(self, app_id: int) -> FakeContract:
        return self.contracts[int(app_id)]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture()
def ledger(clock: FakeClock) -> FakeLedger:
    return FakeLedger(clock)


@pytest.fixture()
def identity(store: FakeDocumentStore, ledger: FakeLedger) -> IdentityResolver:
    return IdentityResolver(store, ledger)


@pytest.fixture()
def manager(store, identity, ledger, clock) -> ElectionLifecycleManager:
    return ElectionLifecycleManager(store, identity, ledger, clock=clock)


@pytest.fixture()
def organizer(identity: IdentityResolver):
    return identity.register("Olivia Organizer", "olivia@example.com", "organizer-pass", True)


@pytest.fixture()
def registered_voters(identity: IdentityResolver):
    return [
        identity.register("Vera Voter", "vera@example.com", "voter-pass-1", False),
        identity.register("Victor Voter", "victor@example.com", "voter-pass-2", False),
    ]
