"""
Unit tests for the force-kill escalation.
"""

import unittest
import threading
from unittest.mock import Mock

import sys
import os
# Add src to path so we can import using the same relative imports as the service
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from service.force_kill import EscalationStep, ForceKillEscalation, RepeatingTimer


class TestForceKillEscalation(unittest.TestCase):
    """Test cases for ForceKillEscalation, driven tick by tick"""

    def setUp(self):
        self.kill = Mock(return_value=True)

    def make(self, timeout=5, interval=1, max_kill_attempts=3):
        return ForceKillEscalation(pid=1234, kill=self.kill, timeout=timeout, interval=interval,
                                   max_kill_attempts=max_kill_attempts)

    def test_first_kill_after_timeout(self):
        """With timeout 5 and interval 1 the fifth tick sends the first kill"""
        escalation = self.make()
        steps = [escalation.tick() for _ in range(5)]

        self.assertEqual(steps[:4], [EscalationStep.WAITING] * 4)
        self.assertEqual(steps[4], EscalationStep.KILL_SENT)
        self.assertEqual(self.kill.call_count, 1)
        self.assertEqual(escalation.elapsed, 5)

    def test_kills_every_tick_until_cap_then_unkillable_once(self):
        escalation = self.make(max_kill_attempts=3)
        steps = [escalation.tick() for _ in range(10)]

        self.assertEqual(steps[4:7], [EscalationStep.KILL_SENT] * 3)
        self.assertEqual(steps[7], EscalationStep.UNKILLABLE)
        self.assertEqual(steps[8:], [EscalationStep.RESOLVED] * 2)
        self.assertEqual(steps.count(EscalationStep.UNKILLABLE), 1)
        self.assertEqual(self.kill.call_count, 3)
        self.assertEqual(escalation.kills_sent, 3)
        self.assertTrue(escalation.resolved)

    def test_interval_larger_than_one(self):
        escalation = self.make(timeout=5, interval=2)
        self.assertEqual(escalation.tick(), EscalationStep.WAITING)
        self.assertEqual(escalation.tick(), EscalationStep.WAITING)
        self.assertEqual(escalation.tick(), EscalationStep.KILL_SENT)
        self.assertEqual(escalation.elapsed, 6)

    def test_zero_timeout_kills_on_first_tick(self):
        escalation = self.make(timeout=0)
        self.assertEqual(escalation.tick(), EscalationStep.KILL_SENT)

    def test_cancel_stops_escalation_and_zeroes_bookkeeping(self):
        escalation = self.make()
        for _ in range(6):
            escalation.tick()
        escalation.cancel()

        self.assertEqual(escalation.elapsed, 0)
        self.assertEqual(escalation.kills_sent, 0)
        self.assertEqual(escalation.tick(), EscalationStep.RESOLVED)
        self.assertEqual(self.kill.call_count, 2)

        # Idempotent
        escalation.cancel()
        self.assertTrue(escalation.resolved)

    def test_invalid_interval(self):
        with self.assertRaises(ValueError):
            self.make(interval=0)

    def test_start_delivers_ticks_until_cancelled(self):
        ticks = []
        enough = threading.Event()

        def on_tick_due(escalation):
            ticks.append(escalation)
            if len(ticks) >= 2:
                enough.set()

        escalation = self.make(timeout=1, interval=0.01)
        escalation.start(on_tick_due)

        self.assertTrue(enough.wait(2))
        escalation.cancel()
        self.assertTrue(escalation._timer.cancelled)
        self.assertIs(ticks[0], escalation)
        # Ticks are only applied by the owner
        self.kill.assert_not_called()

    def test_start_after_cancel_does_nothing(self):
        escalation = self.make()
        escalation.cancel()
        escalation.start(Mock())
        self.assertIsNone(escalation._timer)


class TestRepeatingTimer(unittest.TestCase):
    """Test cases for RepeatingTimer"""

    def test_calls_function_repeatedly(self):
        calls = []
        done = threading.Event()

        def function():
            calls.append(1)
            if len(calls) == 3:
                done.set()

        timer = RepeatingTimer(0.01, function)
        timer.start()
        self.assertTrue(done.wait(2))
        timer.cancel()
        self.assertTrue(timer.cancelled)

    def test_exception_in_function_keeps_timer_running(self):
        done = threading.Event()
        calls = []

        def function():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            done.set()

        timer = RepeatingTimer(0.01, function)
        timer.start()
        self.assertTrue(done.wait(2))
        timer.cancel()


if __name__ == '__main__':
    unittest.main()
