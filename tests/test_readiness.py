import unittest
from unittest import mock

from stylecam.core.errors import LoadFailure
from stylecam.core.readiness import (
    BACKEND, MODELS, VIDEO, ReadinessFlags, ReadinessGate, SubsystemState,
)


class TestReadinessGate(unittest.TestCase):
    def setUp(self):
        self.gate = ReadinessGate()
        self.listener = mock.Mock()
        self.gate.add_listener(self.listener)

    def _all_ready(self):
        self.gate.begin_loading(MODELS)
        self.gate.mark_ready(MODELS)
        self.gate.mark_ready(VIDEO)
        self.gate.mark_ready(BACKEND)

    def test_01_inactive_until_all_flags_ready(self):
        """active only when models, video and backend are all ready"""
        self.assertFalse(self.gate.active)
        self.gate.mark_ready(VIDEO)
        self.gate.mark_ready(BACKEND)
        self.assertFalse(self.gate.active)
        self.listener.assert_not_called()

        self.gate.begin_loading(MODELS)
        self.assertEqual(self.gate.state(MODELS), SubsystemState.LOADING)
        self.gate.mark_ready(MODELS)
        self.assertTrue(self.gate.active)
        self.listener.assert_called_once_with(True)
        self.assertEqual(self.gate.flags(), ReadinessFlags(True, True, True))

    def test_02_dropping_one_flag_deactivates(self):
        self._all_ready()
        self.gate.mark_not_ready(VIDEO)
        self.assertFalse(self.gate.active)
        self.assertFalse(self.gate.flags().active)
        self.assertEqual(self.listener.call_args_list, [mock.call(True), mock.call(False)])

        self.gate.mark_ready(VIDEO)
        self.assertTrue(self.gate.active)
        self.assertEqual(self.listener.call_count, 3)

    def test_03_listeners_only_fire_on_flip(self):
        self.gate.mark_ready(VIDEO)
        self.gate.mark_ready(VIDEO)
        self.gate.mark_not_ready(BACKEND)  # not ready yet: ignored
        self.listener.assert_not_called()

    def test_04_failure_is_terminal_and_surfaced_once(self):
        on_failure = mock.Mock()
        self.gate.add_failure_listener(on_failure)
        error = LoadFailure(MODELS, message="weights missing")

        self.gate.mark_ready(VIDEO)
        self.gate.mark_ready(BACKEND)
        self.gate.begin_loading(MODELS)
        self.gate.mark_failed(MODELS, error)
        self.gate.mark_failed(MODELS, error)

        on_failure.assert_called_once_with(MODELS, error)
        self.assertTrue(self.gate.failed)
        self.assertIn("weights missing", self.gate.errors()[MODELS])

        self.gate.mark_ready(MODELS)
        self.assertEqual(self.gate.state(MODELS), SubsystemState.FAILED)
        self.assertFalse(self.gate.active)
        self.listener.assert_not_called()

    def test_05_failure_after_active_deactivates(self):
        self._all_ready()
        self.gate.mark_failed(BACKEND, RuntimeError("device lost"))
        self.assertFalse(self.gate.active)
        self.listener.assert_called_with(False)

    def test_06_unknown_subsystem_rejected(self):
        with self.assertRaises(ValueError):
            self.gate.mark_ready("audio")

    def test_07_listener_errors_are_contained(self):
        self.gate.add_listener(mock.Mock(side_effect=RuntimeError("boom")))
        with self.assertLogs("stylecam.core.readiness", level="ERROR"):
            self._all_ready()
        self.assertTrue(self.gate.active)
        self.listener.assert_called_once_with(True)

    def test_08_remove_listener(self):
        remove = self.gate.add_listener(mock.Mock())
        remove()
        remove()
        self._all_ready()
        self.listener.assert_called_once_with(True)

    def test_10_models_must_pass_through_loading(self):
        with self.assertLogs("stylecam.core.readiness", level="WARNING"):
            self.gate.mark_ready(MODELS)
        self.assertEqual(self.gate.state(MODELS), SubsystemState.IDLE)

        self.gate.begin_loading(MODELS)
        self.gate.mark_ready(MODELS)
        self.assertEqual(self.gate.state(MODELS), SubsystemState.READY)

    def test_09_states_for_status(self):
        self.gate.mark_ready(VIDEO)
        self.assertEqual(self.gate.states(), {MODELS: "IDLE", VIDEO: "READY", BACKEND: "IDLE"})


if __name__ == "__main__":
    unittest.main()
