from app.models.pydantic import ProjectState
from app.services.revision.limiter import CorrectionLimiter


def test_cap_after_max_attempts():
    limiter = CorrectionLimiter(ProjectState(project_id=1), max_attempts=4)
    for _ in range(4):
        assert limiter.can_attempt(3)
        limiter.record_attempt(3)
    assert not limiter.can_attempt(3)
    # andere Kapitel sind nicht betroffen
    assert limiter.can_attempt(4)


def test_counts_are_persisted_with_string_keys():
    saved = []
    state = ProjectState(project_id=1)
    limiter = CorrectionLimiter(state, max_attempts=2, on_change=saved.append)
    assert limiter.record_attempt(998) == 1
    assert state.correction_counts == {"998": 1}
    assert limiter.counts() == {998: 1}
    assert len(saved) == 1


def test_reset_reopens_unit():
    state = ProjectState(project_id=1, correction_counts={"2": 5})
    limiter = CorrectionLimiter(state, max_attempts=4)
    assert not limiter.can_attempt(2)
    limiter.reset(2)
    assert limiter.can_attempt(2)
    assert limiter.count(2) == 0
