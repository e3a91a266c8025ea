"""Unit tests for OperationContext and ProcessSupervisor with mocked processes."""
import threading
import pytest
from unittest.mock import MagicMock, patch
from vsz.domain.errors import Cancelled, CompressionFailed
from vsz.infrastructure.process import OperationContext, ProcessSupervisor


class TestOperationContext:
    def test_starts_live_and_unresolved(self):
        context = OperationContext("a.mp4")
        assert context.is_live
        assert not context.cancelled
        assert not context.resolved

    def test_mark_cancelled_only_once(self):
        context = OperationContext()
        process = MagicMock()
        assert context.attach(process) is True
        assert context.mark_cancelled() == (True, process)
        assert context.mark_cancelled() == (False, None)
        assert not context.is_live

    def test_attach_refused_after_cancel(self):
        context = OperationContext()
        context.mark_cancelled()
        assert context.attach(MagicMock()) is False

    def test_outcome_resolves_once(self):
        context = OperationContext()
        assert context.complete(0) is True
        assert context.complete(1) is False
        outcome = context.wait(timeout=1)
        assert outcome.returncode == 0
        assert outcome.succeeded

    def test_cancel_before_completion_wins(self):
        context = OperationContext()
        context.mark_cancelled()
        context.complete(0)
        outcome = context.wait(timeout=1)
        assert outcome.cancelled
        assert not outcome.succeeded

    def test_cancel_after_completion_does_not_change_outcome(self):
        context = OperationContext()
        context.complete(0)
        context.mark_cancelled()
        assert context.wait(timeout=1).succeeded

    def test_racing_completions_resolve_exactly_once(self):
        context = OperationContext()
        winners = []
        barrier = threading.Barrier(8)

        def resolve(code):
            barrier.wait()
            if context.complete(code):
                winners.append(code)

        threads = [threading.Thread(target=resolve, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
        assert context.wait(timeout=1).returncode == winners[0]


class TestSupervisorWithMocks:
    def test_start_on_cancelled_context_never_spawns(self):
        supervisor = ProcessSupervisor()
        context = OperationContext()
        supervisor.cancel(context)
        with patch("subprocess.Popen") as mock_popen:
            with pytest.raises(Cancelled):
                supervisor.start(["ffmpeg"], context)
            mock_popen.assert_not_called()
        assert context.wait(timeout=1).cancelled

    def test_spawn_failure_is_compression_failed(self):
        supervisor = ProcessSupervisor()
        context = OperationContext()
        with patch("subprocess.Popen", side_effect=FileNotFoundError(2, "No such file", "ffmpeg")):
            with pytest.raises(CompressionFailed, match="Process execution failed"):
                supervisor.start(["ffmpeg"], context)
        assert context.resolved

    def test_cancel_without_process_resolves_cancelled(self):
        supervisor = ProcessSupervisor()
        context = OperationContext()
        supervisor.cancel(context)
        supervisor.cancel(context)
        outcome = context.wait(timeout=1)
        assert outcome.cancelled
        assert outcome.returncode is None

    def test_cancel_skips_signals_for_exited_process(self):
        supervisor = ProcessSupervisor()
        context = OperationContext()
        process = MagicMock()
        process.poll.return_value = 0
        context.attach(process)
        supervisor.cancel(context)
        process.send_signal.assert_not_called()

    def test_escalation_stops_once_process_exits(self):
        supervisor = ProcessSupervisor(term_grace=0.01, interrupt_grace=0.01)
        context = OperationContext()
        process = MagicMock()
        process.poll.return_value = None
        process.wait.return_value = 0
        supervisor._escalate(process, context)
        # exited within the SIGTERM grace period
        assert process.send_signal.call_count == 1
