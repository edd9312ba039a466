"""
Tests for ai_pipeline.py.

The Gemini classifier is replaced by a scripted fake and every sleep is
recorded instead of awaited, so backoff and cooldown schedules can be
asserted exactly.

Covers:
  1. Positive / negative verdicts
  2. Non-rate-limit failures and the per-item retry budget
  3. Already-processed URLs are never re-classified
  4. Rate-limit backoff, cooldown escalation and the final halt
  5. Shutdown
"""

import asyncio
import json
import time

import pytest

from termcrawler.ai_pipeline import AIPipeline, backoff_delay, cooldown_delay
from termcrawler.ai_queue import AIProcessingState, AIQueueStore
from termcrawler.classifier import Verdict
from termcrawler.errors import ClassifierError, PipelineHalted, RateLimitError
from termcrawler.match_recorder import MatchRecord, MatchRecorder
from termcrawler.terms import TermMatch

URL_A = "https://example.edu/a"
URL_B = "https://example.edu/b"


class FakeClassifier:
    """Returns (or raises) scripted outcomes in order; repeats the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.call_times = []
        self.closed = 0

    async def classify(self, text, url):
        self.calls.append(url)
        self.call_times.append(time.monotonic())
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed += 1


class SleepRecorder:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


POSITIVE = Verdict(positive=True, analysis="AI_Crawler: Content Found: DEI office page")
NEGATIVE = Verdict(positive=False, analysis="AI_Crawler: Not the Content you are looking for.")


def _match():
    return TermMatch("dei_programs", "dei office", "DEI office", "...the DEI office...", 4)


@pytest.fixture
def env(tmp_path):
    """Queue store, processing state and recorder rooted in tmp_path."""
    recorder = MatchRecorder(tmp_path / "matches")
    store = AIQueueStore(tmp_path / "state" / "ai_queue.json", already_recorded=recorder.contains)
    state = AIProcessingState.load(tmp_path / "state" / "ai-state.json")
    return store, state, recorder


def _pipeline(env, classifier, sleep, **kwargs):
    store, state, recorder = env
    kwargs.setdefault("request_delay", 0)
    return AIPipeline(store, state, classifier, recorder, sleep=sleep, **kwargs)


# ====================================================================
# 1. Verdicts
# ====================================================================

class TestVerdicts:

    def test_positive_is_recorded_and_removed(self, env):
        store, state, recorder = env
        store.stage(URL_A, "The DEI office supports...", "Equity", [_match()])
        classifier = FakeClassifier(POSITIVE)
        pipeline = _pipeline(env, classifier, SleepRecorder())

        asyncio.run(pipeline.run())

        assert classifier.calls == [URL_A]
        assert recorder.contains(URL_A)
        assert state.is_processed(URL_A)
        assert store.load() == []
        assert pipeline.positives == 1
        assert classifier.closed == 1

        data = json.loads(recorder.json_path.read_text(encoding="utf-8"))
        assert data[0]["aiAnalysis"] == POSITIVE.analysis
        assert data[0]["terms"][0]["term"] == "dei office"

    def test_negative_is_processed_not_recorded(self, env):
        store, state, recorder = env
        store.stage(URL_A, "text", "", [_match()])
        pipeline = _pipeline(env, FakeClassifier(NEGATIVE), SleepRecorder())

        asyncio.run(pipeline.run())

        assert state.is_processed(URL_A)
        assert not recorder.contains(URL_A)
        assert not recorder.csv_path.exists()
        assert store.load() == []

    def test_items_processed_in_queue_order(self, env):
        store, _, _ = env
        store.stage(URL_A, "a", "", [_match()])
        store.stage(URL_B, "b", "", [_match()])
        classifier = FakeClassifier(NEGATIVE)

        asyncio.run(_pipeline(env, classifier, SleepRecorder()).run())
        assert classifier.calls == [URL_A, URL_B]

    def test_requests_are_paced(self, env):
        store, _, _ = env
        store.stage(URL_A, "a", "", [_match()])
        store.stage(URL_B, "b", "", [_match()])
        sleep = SleepRecorder()

        asyncio.run(_pipeline(env, FakeClassifier(NEGATIVE), sleep, request_delay=2.0).run())
        # only the second request waits
        assert len(sleep.delays) == 1
        assert 0 < sleep.delays[0] <= 2.0


# ====================================================================
# 2. Failures and retry budget
# ====================================================================

class TestFailures:

    def test_failure_retried_then_marked_failed(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(ClassifierError("500 internal"))
        sleep = SleepRecorder()

        asyncio.run(_pipeline(env, classifier, sleep, max_queue_retries=3, poll_interval=5).run())

        assert classifier.calls == [URL_A, URL_A, URL_A]
        assert state.failed == [URL_A]
        assert not state.is_processed(URL_A)
        assert store.load() == []
        # polled between passes while the item was still pending
        assert sleep.delays == [5, 5]

    def test_failure_then_success(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(ClassifierError("boom"), POSITIVE)

        asyncio.run(_pipeline(env, classifier, SleepRecorder()).run())

        assert classifier.calls == [URL_A, URL_A]
        assert state.is_processed(URL_A)
        assert state.failed == []

    def test_failing_item_does_not_block_the_next(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        store.stage(URL_B, "b", "", [_match()])
        classifier = FakeClassifier(ClassifierError("boom"), NEGATIVE)

        asyncio.run(_pipeline(env, classifier, SleepRecorder()).run())

        assert classifier.calls[:2] == [URL_A, URL_B]
        assert state.is_processed(URL_A)
        assert state.is_processed(URL_B)


# ====================================================================
# 3. Already processed
# ====================================================================

class TestAlreadyProcessed:

    def test_processed_url_never_reclassified(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        state.mark_processed(URL_A)
        classifier = FakeClassifier(POSITIVE)

        asyncio.run(_pipeline(env, classifier, SleepRecorder()).run())
        assert classifier.calls == []

    def test_recorded_url_not_restaged(self, env):
        store, _, _ = env
        store.stage(URL_A, "a", "", [_match()])
        asyncio.run(_pipeline(env, FakeClassifier(POSITIVE), SleepRecorder()).run())

        assert store.stage(URL_A, "a", "", [_match()]) is False
        assert store.load() == []

    def test_recorded_but_unmarked_url_not_reclassified(self, env):
        store, state, recorder = env
        store.stage(URL_A, "a", "", [_match()])
        # match written, then the process died before the item was marked processed
        recorder.record(MatchRecord(url=URL_A, title="", terms=[], analysis=POSITIVE.analysis))
        classifier = FakeClassifier(POSITIVE)

        asyncio.run(_pipeline(env, classifier, SleepRecorder()).run())

        assert classifier.calls == []
        assert state.is_processed(URL_A)
        assert store.load() == []
        data = json.loads(recorder.json_path.read_text(encoding="utf-8"))
        assert [m["url"] for m in data] == [URL_A]


# ====================================================================
# 4. Rate limits
# ====================================================================

class TestRateLimits:

    def test_schedules(self):
        assert [backoff_delay(n) for n in range(3)] == [1.0, 2.0, 4.0]
        assert backoff_delay(10) == 30.0
        assert [cooldown_delay(n) for n in (1, 2, 3)] == [60.0, 120.0, 240.0]
        assert cooldown_delay(10) == 900.0

    def test_transient_rate_limit_recovers(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(RateLimitError("429"), NEGATIVE)
        sleep = SleepRecorder()

        asyncio.run(_pipeline(env, classifier, sleep).run())

        assert sleep.delays == [1.0]
        assert state.is_processed(URL_A)
        # rate limits never consume the item's retry budget
        assert state.failed == []

    def test_persistent_rate_limit_escalates_then_halts(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(RateLimitError("429"))
        sleep = SleepRecorder()
        pipeline = _pipeline(env, classifier, sleep)

        with pytest.raises(PipelineHalted):
            asyncio.run(pipeline.run())

        # two in-call backoffs, then two cooldowns, then the halt
        assert sleep.delays == [1.0, 2.0, 60.0, 120.0]
        assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))
        assert len(classifier.calls) == 5
        assert classifier.closed == 1

    def test_halt_leaves_item_pending_and_saves_state(self, env, tmp_path):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(RateLimitError("429"))
        sleep = SleepRecorder()
        pipeline = _pipeline(env, classifier, sleep, max_retries=0, max_cooldown_attempts=3)

        with pytest.raises(PipelineHalted):
            asyncio.run(pipeline.run())

        assert len(classifier.calls) == 3
        assert sleep.delays == [60.0, 120.0]
        [item] = store.pending()
        assert item.url == URL_A
        assert item.retry_count == 0

        saved = json.loads((tmp_path / "state" / "ai-state.json").read_text(encoding="utf-8"))
        assert saved["lastProcessed"] == URL_A
        assert saved["processed"] == []

    def test_success_resets_cooldown_budget(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        store.stage(URL_B, "b", "", [_match()])
        rl = RateLimitError("429")
        # A: cooldown once then succeeds; B: cooldown once then succeeds
        classifier = FakeClassifier(rl, NEGATIVE, rl, NEGATIVE)
        sleep = SleepRecorder()

        asyncio.run(_pipeline(env, classifier, sleep, max_retries=0, max_cooldown_attempts=2).run())

        assert state.is_processed(URL_A)
        assert state.is_processed(URL_B)
        assert sleep.delays == [60.0, 60.0]


# ====================================================================
# 5. Shutdown
# ====================================================================

class TestShutdown:

    def test_shutdown_before_run_processes_nothing(self, env):
        store, _, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(POSITIVE)
        pipeline = _pipeline(env, classifier, SleepRecorder())
        pipeline.request_shutdown()

        asyncio.run(pipeline.run())

        assert classifier.calls == []
        assert classifier.closed == 1
        assert len(store.pending()) == 1

    def test_shutdown_is_idempotent(self, env):
        classifier = FakeClassifier(POSITIVE)
        pipeline = _pipeline(env, classifier, SleepRecorder())

        async def _twice():
            await pipeline.shutdown()
            await pipeline.shutdown()

        asyncio.run(_twice())
        assert classifier.closed == 1

    def test_keep_running_polls_until_drained(self, env):
        store, state, _ = env
        classifier = FakeClassifier(NEGATIVE)
        polls = []

        async def sleep(seconds):
            polls.append(seconds)
            if len(polls) == 1:
                store.stage(URL_A, "a", "", [_match()])
            else:
                pipeline.finish_when_drained()

        pipeline = _pipeline(env, classifier, sleep, stop_when_empty=False, poll_interval=7)
        asyncio.run(pipeline.run())

        assert classifier.calls == [URL_A]
        assert state.is_processed(URL_A)
        assert polls[0] == 7

    def test_finish_when_drained_keeps_cooldown(self, env):
        store, _, _ = env
        store.stage(URL_A, "a", "", [_match()])
        classifier = FakeClassifier(RateLimitError("429"), NEGATIVE)

        async def _run():
            pipeline = _pipeline(env, classifier, None, stop_when_empty=False,
                                 rate_limit_threshold=1, cooldown_base=0.4)
            asyncio.get_running_loop().call_later(0.05, pipeline.finish_when_drained)
            await pipeline.run()

        asyncio.run(_run())

        assert classifier.calls == [URL_A, URL_A]
        assert classifier.call_times[1] - classifier.call_times[0] >= 0.35

    def test_finish_when_drained_keeps_pacing(self, env):
        store, state, _ = env
        store.stage(URL_A, "a", "", [_match()])
        store.stage(URL_B, "b", "", [_match()])
        classifier = FakeClassifier(NEGATIVE)

        async def _run():
            pipeline = _pipeline(env, classifier, None, stop_when_empty=False, request_delay=0.4)
            asyncio.get_running_loop().call_later(0.05, pipeline.finish_when_drained)
            await pipeline.run()

        asyncio.run(_run())

        assert classifier.calls == [URL_A, URL_B]
        assert classifier.call_times[1] - classifier.call_times[0] >= 0.35
        assert state.is_processed(URL_B)

    def test_finish_when_drained_cuts_idle_poll(self, env):
        classifier = FakeClassifier(NEGATIVE)

        async def _run():
            pipeline = _pipeline(env, classifier, None, stop_when_empty=False, poll_interval=30)
            asyncio.get_running_loop().call_later(0.05, pipeline.finish_when_drained)
            started = time.monotonic()
            await pipeline.run()
            return time.monotonic() - started

        assert asyncio.run(_run()) < 5
        assert classifier.closed == 1
