"""
Worker Capture.

Алгоритм:
- lease из q:capture (Job Store: Redis или inline)
- CaptureJobHandler: Session PENDING → RECORDING → {COMPLETED, FAILED}
- успех ставит transcode job
- SIGTERM/SIGINT: перестаём брать задачи, дожидаемся текущих, закрываем fan-out
"""

from __future__ import annotations

import signal

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.observability import setup_observability
from meeting_capture_agent.queue.dispatcher import Q_CAPTURE
from meeting_capture_agent.services.readiness_service import enforce_startup_readiness
from meeting_capture_agent.services.runtime import build_runtime

log = get_project_logger()


def main() -> None:
    s = get_settings()
    setup_observability(metrics_port=s.worker_metrics_port or None)
    enforce_startup_readiness(service_name="worker-capture")

    runtime = build_runtime(s)
    pool = runtime.worker_pool()

    def _shutdown(signum, _frame) -> None:
        log.info("worker_capture_signal", extra={"payload": {"signal": signum}})
        pool.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        pool.run(Q_CAPTURE, s.capture_concurrency, runtime.capture_handler())
    finally:
        runtime.close()
        log.info("worker_capture_stopped")


if __name__ == "__main__":
    main()
