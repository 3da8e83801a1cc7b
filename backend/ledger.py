import base64
import hashlib
import hmac
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

from algosdk import account, encoding, logic, mnemonic, transaction
from algosdk.error import AlgodHTTPError, WrongChecksumError, WrongMnemonicLengthError
from algosdk.v2client import algod
from nacl.signing import SigningKey

import settings
from errors import ElectionError, GrantInterrupted, LedgerRejection, LedgerTimeout, LedgerUnavailable
from smart_contract import (
    COUNT_KEY,
    END_KEY,
    MAX_CANDIDATE_NAME_BYTES,
    MAX_CANDIDATES,
    MAX_VOTERS_PER_CALL,
    NAME_PREFIX,
    ORGANIZER_KEY,
    START_KEY,
    VOTES_PREFIX,
    candidate_state_key,
    compile_contract,
)

logger = logging.getLogger(__name__)

APP_MIN_BALANCE = 100_000
# box minimum balance: 2500 + 400 * (name length + value length)
VOTER_BOX_COST = 2500 + 400 * (32 + 8)
MAX_GROUP_SIZE = 16


@dataclass(frozen=True)
class VoterRecord:
    valid_voter: bool
    voted: bool
    voted_for: int


@dataclass(frozen=True)
class CandidateRecord:
    name: str
    vote_count: int


class Signer:
    """Signing context for one ledger account, valid until released."""

    def __init__(self, address: str, private_key: str) -> None:
        self.address = address
        self._private_key: str | None = private_key

    def sign(self, txn: transaction.Transaction) -> transaction.SignedTransaction:
        if self._private_key is None:
            raise RuntimeError("Signer has been released")
        return txn.sign(self._private_key)

    def release(self) -> None:
        self._private_key = None


def derive_private_key(master_seed: bytes, account_index: int) -> str:
    if account_index < 0:
        raise ValueError("Account index must be non-negative")
    seed = hmac.new(master_seed, f"account/{account_index}".encode("ascii"), hashlib.sha512).digest()[:32]
    signing_key = SigningKey(seed)
    return base64.b64encode(signing_key.encode() + signing_key.verify_key.encode()).decode("ascii")


def _u64(value: int) -> bytes:
    return int(value).to_bytes(8, "big")


def _chunks(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


class LedgerClient:
    """Process-wide handle on the Algorand node.

    Election accounts are derived from the service mnemonic and an integer
    index, so resolving an account never touches the network.
    """

    def __init__(
        self,
        algod_client: algod.AlgodClient | None = None,
        service_mnemonic: str | None = None,
        timeout_rounds: int | None = None,
    ) -> None:
        if algod_client is None:
            if not settings.ALGOD_ADDRESS:
                raise LedgerUnavailable("ALGORAND_ALGOD_ADDRESS is required")
            algod_client = algod.AlgodClient(
                settings.ALGOD_TOKEN,
                settings.ALGOD_ADDRESS,
                headers={"X-API-Key": settings.ALGOD_TOKEN} if settings.ALGOD_TOKEN else {},
            )
        service_mnemonic = service_mnemonic if service_mnemonic is not None else settings.SERVICE_MNEMONIC
        if not service_mnemonic:
            raise LedgerUnavailable("ALGORAND_SERVICE_MNEMONIC is required")
        try:
            self.private_key = mnemonic.to_private_key(service_mnemonic)
        except (WrongChecksumError, WrongMnemonicLengthError, ValueError) as exc:
            raise LedgerUnavailable(f"Invalid ALGORAND_SERVICE_MNEMONIC: {exc}") from exc
        self.algod = algod_client
        self.sender = account.address_from_private_key(self.private_key)
        self._master_seed = base64.b64decode(self.private_key)[:32]
        self.timeout_rounds = timeout_rounds if timeout_rounds is not None else settings.LEDGER_TX_TIMEOUT_ROUNDS
        self._programs: tuple[bytes, bytes] | None = None
        self._programs_lock = threading.Lock()

    def resolve_address(self, account_index: int) -> str:
        return account.address_from_private_key(derive_private_key(self._master_seed, int(account_index)))

    @contextmanager
    def signer(self, account_index: int) -> Iterator[Signer]:
        private_key = derive_private_key(self._master_seed, int(account_index))
        signer = Signer(account.address_from_private_key(private_key), private_key)
        try:
            yield signer
        finally:
            signer.release()

    def status(self) -> dict[str, Any]:
        return self.request(self.algod.status)

    def request(self, method, *args, **kwargs):
        try:
            return method(*args, **kwargs)
        except AlgodHTTPError as exc:
            raise LedgerRejection(str(exc)) from exc
        except OSError as exc:
            raise LedgerUnavailable(f"Blockchain client unavailable: {exc}") from exc

    def wait_for_confirmation(self, tx_id: str, timeout_rounds: int | None = None) -> dict[str, Any]:
        timeout = timeout_rounds if timeout_rounds is not None else self.timeout_rounds
        start_round = self.request(self.algod.status)["last-round"] + 1
        current_round = start_round
        while current_round < start_round + timeout:
            pending_txn = self.request(self.algod.pending_transaction_info, tx_id)
            confirmed_round = pending_txn.get("confirmed-round", 0)
            if confirmed_round > 0:
                return pending_txn
            pool_error = pending_txn.get("pool-error")
            if pool_error:
                raise LedgerRejection(f"Transaction rejected: {pool_error}")
            self.request(self.algod.status_after_block, current_round)
            current_round += 1
        raise LedgerTimeout(f"Transaction not confirmed after {timeout} rounds")

    def submit(self, signed: list[transaction.SignedTransaction]) -> tuple[str, dict[str, Any]]:
        if len(signed) == 1:
            tx_id = self.request(self.algod.send_transaction, signed[0])
        else:
            tx_id = self.request(self.algod.send_transactions, signed)
        return tx_id, self.wait_for_confirmation(tx_id)

    def suggested_params(self) -> transaction.SuggestedParams:
        return self.request(self.algod.suggested_params)

    def fund(self, address: str, amount: int) -> str:
        txn = transaction.PaymentTxn(
            sender=self.sender,
            sp=self.suggested_params(),
            receiver=address,
            amt=int(amount),
        )
        tx_id, _ = self.submit([txn.sign(self.private_key)])
        logger.info("Funded %s with %d microalgos (tx %s)", address, amount, tx_id)
        return tx_id

    def _compiled_programs(self) -> tuple[bytes, bytes]:
        with self._programs_lock:
            if self._programs is None:
                approval_teal, clear_teal = compile_contract()
                approval = self.request(self.algod.compile, approval_teal)
                clear = self.request(self.algod.compile, clear_teal)
                self._programs = (
                    base64.b64decode(approval["result"]),
                    base64.b64decode(clear["result"]),
                )
            return self._programs

    def deploy(self, candidates: Sequence[str], end_time: int, start_time: int, signer: Signer) -> "ElectionContract":
        if not candidates or len(candidates) > MAX_CANDIDATES:
            raise LedgerRejection(f"An election needs between 1 and {MAX_CANDIDATES} candidates")
        names = [str(name).encode("utf-8") for name in candidates]
        if any(len(name) > MAX_CANDIDATE_NAME_BYTES for name in names):
            raise LedgerRejection(f"Candidate names are limited to {MAX_CANDIDATE_NAME_BYTES} bytes")
        approval_program, clear_program = self._compiled_programs()
        txn = transaction.ApplicationCreateTxn(
            sender=signer.address,
            sp=self.suggested_params(),
            on_complete=transaction.OnComplete.NoOpOC,
            approval_program=approval_program,
            clear_program=clear_program,
            global_schema=transaction.StateSchema(num_uints=3 + len(names), num_byte_slices=1 + len(names)),
            local_schema=transaction.StateSchema(0, 0),
            app_args=[_u64(end_time), _u64(start_time), *names],
        )
        tx_id, pending = self.submit([signer.sign(txn)])
        app_id = int(pending["application-index"])
        contract = ElectionContract(self, app_id, tx_id=tx_id)

        funding = transaction.PaymentTxn(
            sender=signer.address,
            sp=self.suggested_params(),
            receiver=contract.address,
            amt=APP_MIN_BALANCE,
        )
        self.submit([signer.sign(funding)])
        logger.info("Deployed election application %d at %s (tx %s)", app_id, contract.address, tx_id)
        return contract

    def contract(self, app_id: int) -> "ElectionContract":
        return ElectionContract(self, int(app_id))


class ElectionContract:
    def __init__(self, ledger: LedgerClient, app_id: int, tx_id: str | None = None) -> None:
        self.ledger = ledger
        self.app_id = int(app_id)
        self.address = logic.get_application_address(self.app_id)
        self.tx_id = tx_id

    @staticmethod
    def _decode_global_state(app_state: list[dict[str, Any]]) -> dict[bytes, int | bytes]:
        decoded: dict[bytes, int | bytes] = {}
        for entry in app_state:
            key = base64.b64decode(entry["key"])
            value = entry["value"]
            if value["type"] == 2:
                decoded[key] = int(value.get("uint", 0))
            elif value["type"] == 1:
                decoded[key] = base64.b64decode(value.get("bytes", ""))
        return decoded

    def _state(self) -> dict[bytes, int | bytes]:
        app_info = self.ledger.request(self.ledger.algod.application_info, self.app_id)
        return self._decode_global_state(app_info["params"].get("global-state", []))

    def number_of_candidates(self) -> int:
        return int(self._state().get(COUNT_KEY, 0))

    def candidates(self, index: int) -> CandidateRecord:
        state = self._state()
        if not 0 <= index < int(state.get(COUNT_KEY, 0)):
            raise LedgerRejection("Invalid candidate")
        name = state.get(candidate_state_key(NAME_PREFIX, index), b"")
        votes = state.get(candidate_state_key(VOTES_PREFIX, index), 0)
        return CandidateRecord(
            name=name.decode("utf-8") if isinstance(name, bytes) else str(name),
            vote_count=int(votes) if isinstance(votes, int) else 0,
        )

    def voters(self, address: str) -> VoterRecord:
        try:
            box = self.ledger.algod.application_box_by_name(self.app_id, encoding.decode_address(address))
        except AlgodHTTPError as exc:
            if exc.code == 404:
                return VoterRecord(valid_voter=False, voted=False, voted_for=0)
            raise LedgerRejection(str(exc)) from exc
        except OSError as exc:
            raise LedgerUnavailable(f"Blockchain client unavailable: {exc}") from exc
        ballot = int.from_bytes(base64.b64decode(box["value"]), "big")
        return VoterRecord(valid_voter=True, voted=ballot > 0, voted_for=ballot - 1 if ballot > 0 else 0)

    def get_winner(self) -> str:
        state = self._state()
        if time.time() < int(state.get(END_KEY, 0)):
            raise LedgerRejection("Election end time has not passed")
        winner, winning_votes = "", -1
        for index in range(int(state.get(COUNT_KEY, 0))):
            votes = int(state.get(candidate_state_key(VOTES_PREFIX, index), 0))
            if votes > winning_votes:
                name = state.get(candidate_state_key(NAME_PREFIX, index), b"")
                winner, winning_votes = name.decode("utf-8"), votes
        return winner

    def vote(self, candidate_id: int, signer: Signer) -> str:
        state = self._state()
        now = time.time()
        if now < int(state.get(START_KEY, 0)):
            raise LedgerRejection("Election has not started")
        if now >= int(state.get(END_KEY, 0)):
            raise LedgerRejection("Election has ended")
        record = self.voters(signer.address)
        if not record.valid_voter:
            raise LedgerRejection("Has no right to vote")
        if record.voted:
            raise LedgerRejection("Already voted")
        if not 0 <= int(candidate_id) < int(state.get(COUNT_KEY, 0)):
            raise LedgerRejection("Invalid candidate")

        txn = transaction.ApplicationNoOpTxn(
            sender=signer.address,
            sp=self.ledger.suggested_params(),
            index=self.app_id,
            app_args=[b"vote", _u64(candidate_id)],
            boxes=[(self.app_id, encoding.decode_address(signer.address))],
        )
        tx_id, _ = self.ledger.submit([signer.sign(txn)])
        return tx_id

    def give_right_to_vote(self, addresses: Sequence[str], signer: Signer) -> list[str]:
        """Grant voting rights to ``addresses`` in as few atomic groups as possible.

        Each group is one payment covering the new boxes followed by up to
        fifteen application calls of seven addresses each, so up to 105
        voters go out in a single group. Returns the group transaction ids.
        A failing group raises :class:`GrantInterrupted` naming the addresses
        already granted by earlier groups.
        """
        if not addresses:
            return []
        organizer = self._state().get(ORGANIZER_KEY)
        if organizer is not None and organizer != encoding.decode_address(signer.address):
            raise LedgerRejection("Only the organizer can give right to vote")

        calls_per_group = MAX_GROUP_SIZE - 1
        batches = _chunks(list(addresses), MAX_VOTERS_PER_CALL)
        tx_ids: list[str] = []
        granted_so_far: list[str] = []
        for group_start in range(0, len(batches), calls_per_group):
            group_batches = batches[group_start:group_start + calls_per_group]
            try:
                sp = self.ledger.suggested_params()
            except ElectionError as exc:
                raise GrantInterrupted(exc, granted_so_far, tx_ids) from exc
            granted = sum(len(batch) for batch in group_batches)
            txns: list[transaction.Transaction] = [
                transaction.PaymentTxn(
                    sender=signer.address,
                    sp=sp,
                    receiver=self.address,
                    amt=granted * VOTER_BOX_COST,
                )
            ]
            for batch in group_batches:
                raw = [encoding.decode_address(address) for address in batch]
                txns.append(
                    transaction.ApplicationNoOpTxn(
                        sender=signer.address,
                        sp=sp,
                        index=self.app_id,
                        app_args=[b"give_right_to_vote", *raw],
                        boxes=[(self.app_id, name) for name in raw],
                    )
                )
            grouped = transaction.assign_group_id(txns)
            try:
                tx_id, _ = self.ledger.submit([signer.sign(txn) for txn in grouped])
            except ElectionError as exc:
                raise GrantInterrupted(exc, granted_so_far, tx_ids) from exc
            tx_ids.append(tx_id)
            granted_so_far.extend(address for batch in group_batches for address in batch)
            logger.info("Granted voting rights to %d addresses on app %d (tx %s)", granted, self.app_id, tx_id)
        return tx_ids
