from __future__ import annotations

import logging
import os

import uvicorn


def main() -> int:
    logging.basicConfig(
        level=os.getenv("CI_RUNNER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "ci_runner.main:app",
        host=os.getenv("CI_RUNNER_HOST", "127.0.0.1"),
        port=int(os.getenv("CI_RUNNER_PORT", "8000")),
        log_level=os.getenv("CI_RUNNER_LOG_LEVEL", "info").lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
