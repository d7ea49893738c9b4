import threading

import pytest

from context_cache.config import SummarizerConfig
from context_cache.errors import NotFoundError, SummarizationFailed, ValidationError
from context_cache.obs.accounting import AccountingLog
from context_cache.store.record_store import RecordStore
from context_cache.summarize.coordinator import SessionState, SummarizerCoordinator, Trigger


def _words(count: int, word: str = "turn") -> str:
    return " ".join([word] * count)


class FakeSummarizer:
    def __init__(self, words: int = 52) -> None:
        self.words = words
        self.calls: list[tuple[int, int]] = []

    def __call__(self, text: str, target_tokens: int) -> str:
        self.calls.append((len(text.split()), target_tokens))
        return _words(self.words, "fact")


@pytest.fixture
def store() -> RecordStore:
    return RecordStore()


@pytest.fixture
def coordinator(store, word_estimator, clock) -> SummarizerCoordinator:
    coordinator = SummarizerCoordinator(
        store,
        FakeSummarizer(),
        word_estimator,
        SummarizerConfig(threshold_tokens=1500, target_tokens=52, timeout_seconds=5.0),
        accounting=AccountingLog(clock=clock),
        clock=clock,
    )
    yield coordinator
    coordinator.shutdown()


def test_summary_is_cheaper_than_its_source(coordinator, store) -> None:
    record = coordinator.summarize_text(_words(3200), ["customer_retention"], target_tokens=52)

    assert record.source_token_cost == 3200
    assert record.token_estimate is not None
    assert record.token_estimate <= 52 * (1 + coordinator.config.target_tolerance)
    assert record.token_estimate < record.source_token_cost
    assert store.get_by_id(record.id) == record
    assert record.type == "conversation_summary"
    assert "customer_retention" in record.tags


def test_threshold_moves_session_to_pending(coordinator) -> None:
    session = coordinator.open_session(["q4"])

    coordinator.append(session.session_id, _words(1000))
    assert session.state is SessionState.ACCUMULATING

    coordinator.append(session.session_id, _words(600))
    assert session.state is SessionState.PENDING_SUMMARIZATION
    assert session.trigger is Trigger.THRESHOLD
    assert session.raw_token_estimate == 1600

    with pytest.raises(ValidationError):
        coordinator.append(session.session_id, "late turn")


def test_manual_and_checkpoint_triggers(coordinator) -> None:
    manual = coordinator.open_session(["q4"])
    coordinator.append(manual.session_id, _words(10))
    coordinator.request_summary(manual.session_id)

    checkpoint = coordinator.open_session(["q4"])
    coordinator.append(checkpoint.session_id, _words(10))
    coordinator.checkpoint(checkpoint.session_id)

    assert manual.trigger is Trigger.MANUAL
    assert checkpoint.trigger is Trigger.CHECKPOINT
    assert checkpoint.state is SessionState.PENDING_SUMMARIZATION


def test_summarize_requires_pending_state(coordinator) -> None:
    session = coordinator.open_session(["q4"])
    coordinator.append(session.session_id, _words(100))

    with pytest.raises(ValidationError):
        coordinator.summarize(session.session_id)


def test_summarize_closes_session_and_retires_active_tag(coordinator, store, make_record) -> None:
    session = coordinator.open_session(["q4"], session_id="s-1", supersedes=["explicit"])
    store.put(make_record("working", tags=["active_session", "session:s-1"]))
    store.put(make_record("explicit", tags=["active_session", "q4"]))
    store.put(make_record("other", tags=["active_session", "session:s-2"]))

    coordinator.append("s-1", _words(400))
    coordinator.checkpoint("s-1")
    record = coordinator.summarize("s-1")

    assert session.state is SessionState.CLOSED
    assert session.turns == []
    assert session.record_id == record.id
    assert record.related_ids == frozenset({"working", "explicit"})
    assert "session:s-1" in record.tags
    assert "active_session" not in store.get_by_id("working").tags
    assert "active_session" not in store.get_by_id("explicit").tags
    assert "active_session" in store.get_by_id("other").tags
    assert len(store) == 4


def test_summarizer_failure_keeps_buffer_and_allows_retry(store, word_estimator, clock) -> None:
    attempts = []

    def flaky(text: str, target_tokens: int) -> str:
        attempts.append(target_tokens)
        if len(attempts) == 1:
            raise RuntimeError("model overloaded")
        return _words(40, "fact")

    coordinator = SummarizerCoordinator(store, flaky, word_estimator, clock=clock)
    session = coordinator.open_session(["q4"])
    coordinator.append(session.session_id, _words(300))
    coordinator.request_summary(session.session_id)

    with pytest.raises(SummarizationFailed) as excinfo:
        coordinator.summarize(session.session_id)

    assert excinfo.value.session_id == session.session_id
    assert session.state is SessionState.PENDING_SUMMARIZATION
    assert session.turns == [_words(300)]
    assert "model overloaded" in (session.last_error or "")
    assert len(store) == 0

    record = coordinator.summarize(session.session_id)
    assert record.token_estimate == 40
    assert session.state is SessionState.CLOSED
    coordinator.shutdown()


def test_timeout_is_a_failure_and_writes_nothing(store, word_estimator, clock) -> None:
    release = threading.Event()

    def slow(text: str, target_tokens: int) -> str:
        release.wait(2.0)
        return "late summary"

    coordinator = SummarizerCoordinator(store, slow, word_estimator, clock=clock)
    try:
        with pytest.raises(SummarizationFailed, match="timed out"):
            coordinator.summarize_text(_words(200), ["q4"], timeout=0.2)
        assert len(store) == 0
    finally:
        release.set()
        coordinator.shutdown()


def test_summary_not_cheaper_than_source_is_rejected(store, word_estimator, clock) -> None:
    coordinator = SummarizerCoordinator(store, lambda text, target: text + " more", word_estimator, clock=clock)

    with pytest.raises(SummarizationFailed, match="not less than"):
        coordinator.summarize_text(_words(30), ["q4"])

    assert len(store) == 0
    coordinator.shutdown()


def test_empty_summary_is_rejected(store, word_estimator, clock) -> None:
    coordinator = SummarizerCoordinator(store, lambda text, target: "   ", word_estimator, clock=clock)

    with pytest.raises(SummarizationFailed, match="empty"):
        coordinator.summarize_text(_words(30), ["q4"])
    coordinator.shutdown()


def test_close_discards_without_writing(coordinator, store) -> None:
    session = coordinator.open_session(["q4"])
    coordinator.append(session.session_id, _words(20))

    coordinator.close(session.session_id)

    assert session.state is SessionState.CLOSED
    assert session.turns == []
    assert len(store) == 0


def test_unknown_session_raises_not_found(coordinator) -> None:
    with pytest.raises(NotFoundError):
        coordinator.get_session("missing")
    with pytest.raises(NotFoundError):
        coordinator.append("missing", "text")


def test_duplicate_open_session_rejected(coordinator) -> None:
    coordinator.open_session(["q4"], session_id="s-1")

    with pytest.raises(ValidationError):
        coordinator.open_session(["q4"], session_id="s-1")


def test_summarization_is_accounted(coordinator) -> None:
    coordinator.summarize_text(_words(3200), ["q4"], target_tokens=52)

    [entry] = coordinator.accounting.entries()
    assert entry.event == "summarization"
    assert entry.equivalent_raw_tokens == 3200
    assert entry.tokens_in_summary == 52
    assert entry.tokens_saved == 3148


def test_hung_summarizer_calls_do_not_starve_later_work(store, word_estimator, clock) -> None:
    hanging = threading.Event()
    release = threading.Event()
    hanging.set()

    def flaky(text: str, target_tokens: int) -> str:
        if hanging.is_set():
            release.wait(5.0)
        return _words(5, "fact")

    coordinator = SummarizerCoordinator(
        store, flaky, word_estimator, SummarizerConfig(max_workers=2), clock=clock
    )
    try:
        for _ in range(4):
            with pytest.raises(SummarizationFailed, match="timed out"):
                coordinator.summarize_text(_words(50), ["q4"], timeout=0.1)
        hanging.clear()

        session = coordinator.open_session(["q4"])
        coordinator.append(session.session_id, _words(50))
        coordinator.request_summary(session.session_id)
        record = coordinator.summarize(session.session_id, timeout=1.0)

        assert record.token_estimate == 5
        assert store.get_by_id(record.id) == record
    finally:
        release.set()
        coordinator.shutdown()


def test_estimator_failure_on_append_is_a_summarization_failure(store, clock) -> None:
    def broken(text: str) -> int:
        raise RuntimeError("tokenizer unavailable")

    coordinator = SummarizerCoordinator(store, FakeSummarizer(), broken, clock=clock)
    session = coordinator.open_session(["q4"])

    with pytest.raises(SummarizationFailed, match="token estimator failed"):
        coordinator.append(session.session_id, _words(10))

    assert session.turns == []
    coordinator.shutdown()


def test_closed_sessions_beyond_retention_are_forgotten(store, word_estimator, clock) -> None:
    coordinator = SummarizerCoordinator(
        store,
        FakeSummarizer(),
        word_estimator,
        SummarizerConfig(closed_session_retention=2),
        clock=clock,
    )
    ids = [coordinator.open_session(["q4"]).session_id for _ in range(3)]
    for session_id in ids:
        coordinator.close(session_id)

    with pytest.raises(NotFoundError):
        coordinator.get_session(ids[0])
    assert coordinator.get_session(ids[1]).state is SessionState.CLOSED
    assert coordinator.get_session(ids[2]).state is SessionState.CLOSED
    coordinator.shutdown()
