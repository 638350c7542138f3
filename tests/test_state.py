import pytest

from transcode_queue.queue import InvalidState, VideoStatus, can_transition, check_transition
from transcode_queue.queue.state import ENQUEUEABLE

S = VideoStatus

LEGAL = [
    (S.UNPROCESSED, S.PENDING),
    (S.PENDING, S.PROCESSING),
    (S.PROCESSING, S.COMPLETED),
    (S.PROCESSING, S.FAILED),
    (S.FAILED, S.PENDING),
]


class TestTransitions:
    @pytest.mark.parametrize("current,new", LEGAL)
    def test_legal_edges(self, current, new):
        assert can_transition(current, new)
        check_transition("job", current, new)

    def test_every_other_edge_is_illegal(self):
        for current in S:
            for new in S:
                if (current, new) in LEGAL:
                    continue
                assert not can_transition(current, new), (current, new)

    def test_no_skips(self):
        assert not can_transition(S.UNPROCESSED, S.PROCESSING)
        assert not can_transition(S.PENDING, S.COMPLETED)
        assert not can_transition(S.PENDING, S.FAILED)

    def test_completed_is_terminal(self):
        assert not any(can_transition(S.COMPLETED, new) for new in S)

    def test_check_transition_raises_invalid_state(self):
        with pytest.raises(InvalidState) as exc_info:
            check_transition("a.mp4", S.COMPLETED, S.PENDING)
        assert exc_info.value.job_id == "a.mp4"
        assert exc_info.value.code == "INVALID_STATE"

    def test_accepts_plain_strings(self):
        assert can_transition("failed", "pending")

    def test_enqueueable_statuses(self):
        assert ENQUEUEABLE == {S.UNPROCESSED, S.FAILED}
