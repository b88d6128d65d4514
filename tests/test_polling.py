"""
Bounded polling tests
"""

import pytest

from cloak.api.errors import RelayError
from cloak.api.polling import Poll, PollTimeoutError, poll_until

from tests.helpers import SleepRecorder


def _sequence(*values):
    it = iter(values)

    async def fetch():
        value = next(it)
        if isinstance(value, Exception):
            raise value
        return value

    return fetch


def _classify(value):
    return {"done": Poll.DONE, "failed": Poll.FAILED}.get(value, Poll.PENDING)


class TestPollUntil:
    async def test_returns_on_first_terminal_value(self):
        sleep = SleepRecorder()
        outcome = await poll_until(_sequence("pending", "pending", "done"), _classify, 2.0, 5, sleep=sleep)
        assert outcome.decision is Poll.DONE
        assert outcome.value == "done"
        assert outcome.attempts == 3
        assert sleep.calls == [2.0, 2.0]

    async def test_failed_is_terminal(self):
        outcome = await poll_until(_sequence("failed"), _classify, 1.0, 5, sleep=SleepRecorder())
        assert outcome.decision is Poll.FAILED
        assert outcome.attempts == 1

    async def test_times_out_without_sleeping_after_last_attempt(self):
        sleep = SleepRecorder()
        with pytest.raises(PollTimeoutError) as exc:
            await poll_until(_sequence(*["pending"] * 3), _classify, 0.5, 3, description="Job", sleep=sleep)
        assert exc.value.attempts == 3
        assert exc.value.last_value == "pending"
        assert "Job" in str(exc.value)
        assert sleep.calls == [0.5, 0.5]

    async def test_transient_errors_use_up_attempts(self):
        outcome = await poll_until(
            _sequence(RelayError("503"), "pending", "done"), _classify, 1.0, 3, sleep=SleepRecorder()
        )
        assert outcome.decision is Poll.DONE
        assert outcome.attempts == 3

    async def test_timeout_keeps_last_error(self):
        with pytest.raises(PollTimeoutError) as exc:
            await poll_until(_sequence(RelayError("down"), RelayError("down")), _classify, 1.0, 2, sleep=SleepRecorder())
        assert isinstance(exc.value.last_error, RelayError)
        assert "down" in str(exc.value)

    async def test_other_errors_propagate(self):
        with pytest.raises(KeyError):
            await poll_until(_sequence(KeyError("boom")), _classify, 1.0, 3, sleep=SleepRecorder())

    async def test_on_value_sees_every_payload(self):
        seen = []
        await poll_until(
            _sequence("queued", "processing", "done"), _classify, 1.0, 5, on_value=seen.append, sleep=SleepRecorder()
        )
        assert seen == ["queued", "processing", "done"]

    async def test_rejects_empty_budget(self):
        with pytest.raises(ValueError):
            await poll_until(_sequence("done"), _classify, 1.0, 0)
