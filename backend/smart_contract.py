from pyteal import *

MAX_CANDIDATES = 14
MAX_VOTERS_PER_CALL = 7

ORGANIZER_KEY = b"organizer"
START_KEY = b"start"
END_KEY = b"end"
COUNT_KEY = b"count"
NAME_PREFIX = b"name"
VOTES_PREFIX = b"votes"

# a global-state key plus its value may not exceed 128 bytes
MAX_CANDIDATE_NAME_BYTES = 128 - len(NAME_PREFIX) - 8

# creation args are (end, start, *names)
CANDIDATE_ARG_OFFSET = 2


def candidate_state_key(prefix: bytes, index: int) -> bytes:
    return prefix + int(index).to_bytes(8, "big")


def _candidate_key(prefix: bytes, index: Expr) -> Expr:
    return Concat(Bytes(prefix), Itob(index))


def build_approval_program() -> Expr:
    organizer_key = Bytes(ORGANIZER_KEY)
    start_key = Bytes(START_KEY)
    end_key = Bytes(END_KEY)
    count_key = Bytes(COUNT_KEY)

    i = ScratchVar(TealType.uint64)
    count = ScratchVar(TealType.uint64)
    on_create = Seq(
        Assert(Txn.application_args.length() > Int(CANDIDATE_ARG_OFFSET)),
        Assert(Len(Txn.application_args[0]) == Int(8)),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        Assert(Btoi(Txn.application_args[1]) < Btoi(Txn.application_args[0])),
        count.store(Txn.application_args.length() - Int(CANDIDATE_ARG_OFFSET)),
        App.globalPut(organizer_key, Txn.sender()),
        App.globalPut(end_key, Btoi(Txn.application_args[0])),
        App.globalPut(start_key, Btoi(Txn.application_args[1])),
        App.globalPut(count_key, count.load()),
        For(i.store(Int(0)), i.load() < count.load(), i.store(i.load() + Int(1))).Do(
            Seq(
                App.globalPut(
                    _candidate_key(NAME_PREFIX, i.load()),
                    Txn.application_args[i.load() + Int(CANDIDATE_ARG_OFFSET)],
                ),
                App.globalPut(_candidate_key(VOTES_PREFIX, i.load()), Int(0)),
            )
        ),
        Approve(),
    )

    voter = ScratchVar(TealType.bytes)
    granted = BoxLen(voter.load())
    give_right_to_vote = Seq(
        Assert(Txn.sender() == App.globalGet(organizer_key)),
        Assert(Txn.application_args.length() > Int(1)),
        For(i.store(Int(1)), i.load() < Txn.application_args.length(), i.store(i.load() + Int(1))).Do(
            Seq(
                voter.store(Txn.application_args[i.load()]),
                Assert(Len(voter.load()) == Int(32)),
                granted,
                If(Not(granted.hasValue())).Then(BoxPut(voter.load(), Itob(Int(0)))),
            )
        ),
        Approve(),
    )

    ballot = BoxGet(Txn.sender())
    candidate = ScratchVar(TealType.uint64)
    vote = Seq(
        Assert(Txn.application_args.length() == Int(2)),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        Assert(Global.latest_timestamp() >= App.globalGet(start_key)),
        Assert(Global.latest_timestamp() < App.globalGet(end_key)),
        ballot,
        # has no right to vote
        Assert(ballot.hasValue()),
        # already voted
        Assert(Btoi(ballot.value()) == Int(0)),
        candidate.store(Btoi(Txn.application_args[1])),
        Assert(candidate.load() < App.globalGet(count_key)),
        App.globalPut(
            _candidate_key(VOTES_PREFIX, candidate.load()),
            App.globalGet(_candidate_key(VOTES_PREFIX, candidate.load())) + Int(1),
        ),
        BoxPut(Txn.sender(), Itob(candidate.load() + Int(1))),
        Approve(),
    )

    return Cond(
        [Txn.application_id() == Int(0), on_create],
        [
            Txn.on_completion() == OnComplete.NoOp,
            Cond(
                [Txn.application_args[0] == Bytes("give_right_to_vote"), give_right_to_vote],
                [Txn.application_args[0] == Bytes("vote"), vote],
            ),
        ],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
    )


def build_clear_program() -> Expr:
    return Approve()


def compile_contract() -> tuple[str, str]:
    approval = compileTeal(
        build_approval_program(),
        mode=Mode.Application,
        version=8,
    )
    clear = compileTeal(
        build_clear_program(),
        mode=Mode.Application,
        version=8,
    )
    return approval, clear


if __name__ == "__main__":
    approval_teal, clear_teal = compile_contract()
    print(approval_teal)
    print(clear_teal)
