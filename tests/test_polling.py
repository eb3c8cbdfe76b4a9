"""Tests for the poll-until primitive."""
from __future__ import annotations

import unittest
from typing import List

from bluewake.polling import PollResult, RetryPolicy, poll_until


class _Clock:
    def __init__(self) -> None:
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


class RetryPolicyTest(unittest.TestCase):
    def test_presets(self) -> None:
        enable = RetryPolicy.enable_confirmation()
        self.assertEqual((enable.interval, enable.max_attempts), (0.1, 30))
        self.assertAlmostEqual(enable.ceiling, 3.0)

        verify = RetryPolicy.reconnect_verification(1.5)
        self.assertEqual((verify.max_attempts, verify.initial_delay), (1, 1.5))

    def test_validation(self) -> None:
        with self.assertRaises(ValueError):
            RetryPolicy(interval=-1, max_attempts=1)
        with self.assertRaises(ValueError):
            RetryPolicy(interval=0.1, max_attempts=0)


class PollUntilTest(unittest.IsolatedAsyncioTestCase):
    async def test_confirms_once_predicate_turns_true(self) -> None:
        clock = _Clock()
        answers = iter([False, False, True])

        async def predicate() -> bool:
            return next(answers)

        result = await poll_until(predicate, RetryPolicy(0.1, 5), sleep=clock.sleep)
        self.assertIs(result, PollResult.CONFIRMED)
        self.assertEqual(clock.sleeps, [0.1, 0.1])

    async def test_times_out_after_max_attempts(self) -> None:
        clock = _Clock()
        calls = 0

        async def predicate() -> bool:
            nonlocal calls
            calls += 1
            return False

        result = await poll_until(predicate, RetryPolicy(0.1, 30), sleep=clock.sleep)
        self.assertIs(result, PollResult.TIMED_OUT)
        self.assertEqual(calls, 30)
        self.assertEqual(len(clock.sleeps), 29)

    async def test_abort_during_check_wins_over_result(self) -> None:
        clock = _Clock()
        aborted = False

        async def predicate() -> bool:
            nonlocal aborted
            aborted = True
            return True

        result = await poll_until(predicate, RetryPolicy(0.1, 5), should_abort=lambda: aborted, sleep=clock.sleep)
        self.assertIs(result, PollResult.ABORTED)

    async def test_initial_delay_precedes_single_check(self) -> None:
        clock = _Clock()

        async def predicate() -> bool:
            return False

        result = await poll_until(predicate, RetryPolicy.reconnect_verification(1.5), sleep=clock.sleep)
        self.assertIs(result, PollResult.TIMED_OUT)
        self.assertEqual(clock.sleeps, [1.5])


if __name__ == "__main__":
    unittest.main()
