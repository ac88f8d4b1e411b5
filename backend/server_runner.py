"""Uvicorn launcher for the combined analysis backend.

Streaming responses can run for minutes while the completion API generates, so
no request timeout is configured here; keep-alive only governs idle sockets.
"""

import uvicorn

from backend.config import load_server_settings


def main() -> None:
    server = load_server_settings()
    uvicorn.run(
        "backend.main:app",
        host=server.host,
        port=server.port,
        workers=server.workers,
        backlog=server.backlog,
        timeout_keep_alive=server.timeout_keep_alive,
        limit_concurrency=server.limit_concurrency,
        log_level=server.log_level,
    )


if __name__ == "__main__":
    main()
