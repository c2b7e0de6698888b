"""
Worker Transcode.

Алгоритм:
- lease из q:transcode
- TranscodeJobHandler: Artifact RAW → ENCODING → {ENCODED, FAILED}
- SIGTERM/SIGINT: graceful stop пула
"""

from __future__ import annotations

import signal

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.observability import setup_observability
from meeting_capture_agent.queue.dispatcher import Q_TRANSCODE
from meeting_capture_agent.services.readiness_service import enforce_startup_readiness
from meeting_capture_agent.services.runtime import build_runtime

log = get_project_logger()


def main() -> None:
    s = get_settings()
    setup_observability(metrics_port=s.worker_metrics_port or None)
    enforce_startup_readiness(service_name="worker-transcode", require_encoder=True)

    runtime = build_runtime(s)
    pool = runtime.worker_pool()

    def _shutdown(signum, _frame) -> None:
        log.info("worker_transcode_signal", extra={"payload": {"signal": signum}})
        pool.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        pool.run(Q_TRANSCODE, s.transcode_concurrency, runtime.transcode_handler())
    finally:
        runtime.close()
        log.info("worker_transcode_stopped")


if __name__ == "__main__":
    main()
