from smart_contract import (
    MAX_CANDIDATES,
    MAX_VOTERS_PER_CALL,
    NAME_PREFIX,
    VOTES_PREFIX,
    candidate_state_key,
    compile_contract,
)


def test_programs_target_teal_v8() -> None:
    approval, clear = compile_contract()
    assert approval.startswith("#pragma version 8")
    assert clear.startswith("#pragma version 8")


def test_approval_handles_both_calls() -> None:
    approval, _ = compile_contract()
    assert 'byte "give_right_to_vote"' in approval
    assert 'byte "vote"' in approval
    assert "box_put" in approval


def test_candidate_keys_match_itob_layout() -> None:
    assert candidate_state_key(NAME_PREFIX, 1) == b"name\x00\x00\x00\x00\x00\x00\x00\x01"
    assert candidate_state_key(VOTES_PREFIX, 13) == b"votes" + (13).to_bytes(8, "big")


def test_limits_fit_in_one_application_call() -> None:
    # one method selector plus one argument per voter, at most 16 arguments
    assert MAX_VOTERS_PER_CALL + 1 <= 16
    # two global slots per candidate plus organizer, start, end and count
    assert 2 * MAX_CANDIDATES + 4 <= 64
