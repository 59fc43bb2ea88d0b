"""HeadlessTicker 测试。"""

from __future__ import annotations

import signal

import pytest

from smart_exec.adapters.headless import HeadlessTicker
from smart_exec.config import Config
from smart_exec.runtime.supervisor import KilledBySignal
from smart_exec.runtime.sync_runner import SyncRunner, TickStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestTicks:
    """tick 状态处理测试。"""

    def test_starting_accepts_once(self, clock):
        ticker = HeadlessTicker(clock=clock)
        assert ticker(TickStatus.STARTING) is True
        assert ticker.active
        # 执行期间拒绝新的执行
        assert ticker(TickStatus.STARTING) is False

    def test_running_message_after_delay(self, clock):
        ticker = HeadlessTicker(message="Running smartctl...", show_delay=2.0, clock=clock)
        ticker(TickStatus.STARTING)

        clock.now = 1.0
        assert ticker(TickStatus.RUNNING) is True
        assert ticker.messages == []

        clock.now = 2.5
        ticker(TickStatus.RUNNING)
        clock.now = 3.0
        ticker(TickStatus.RUNNING)
        assert ticker.messages == ["Running smartctl..."]

    def test_message_from_runner(self, clock):
        runner = SyncRunner("/usr/sbin/smartctl", "-a /dev/sda", config=Config())
        ticker = HeadlessTicker(runner, show_delay=0.5, clock=clock)
        ticker(TickStatus.STARTING)
        clock.now = 1.0
        ticker(TickStatus.RUNNING)
        assert ticker.messages == ["Running smartctl..."]

    def test_abort(self, clock):
        ticker = HeadlessTicker(show_delay=2.0, abort_show_delay=0.4, clock=clock)
        ticker(TickStatus.STARTING)

        ticker.abort()
        assert ticker(TickStatus.RUNNING) is False

        clock.now = 0.2
        ticker(TickStatus.STOPPING)
        assert ticker.messages == []

        clock.now = 0.5
        ticker(TickStatus.STOPPING)
        assert ticker.messages == ["Aborting..."]

    @pytest.mark.parametrize("status", [TickStatus.STOPPED, TickStatus.FAILED])
    def test_terminal_status(self, clock, status):
        ticker = HeadlessTicker(clock=clock)
        ticker(TickStatus.STARTING)
        assert ticker(status) is True
        assert not ticker.active
        assert ticker.final_status is status

        # 可以开始下一次执行
        assert ticker(TickStatus.STARTING) is True
        assert ticker.final_status is None


@pytest.mark.integration
class TestWithRunner:
    """与 SyncRunner 一起使用。"""

    def test_run_to_completion(self, fast_config):
        ticker = HeadlessTicker()
        with SyncRunner("true", config=fast_config, tick_callback=ticker) as runner:
            ticker.runner = runner
            assert runner.run()
        assert ticker.final_status is TickStatus.STOPPED
        assert not ticker.active

    def test_abort_stops_child(self, fast_config):
        ticker = HeadlessTicker()

        def tick(status: TickStatus) -> bool:
            if status is TickStatus.RUNNING:
                ticker.abort()
            return ticker(status)

        with SyncRunner("sleep", "30", config=fast_config, tick_callback=tick) as runner:
            assert runner.run()
            assert runner.exit_status == KilledBySignal(signal.SIGTERM, requested=True)
        assert ticker.final_status is TickStatus.STOPPED
