import os

import uvicorn


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


def main() -> None:
    """Serve the Coach API.

    Conversation slots and background tasks live in process memory, so the
    server always runs one worker.
    """
    uvicorn.run(
        "server.main:app",
        host=os.getenv("COACH_HOST", "0.0.0.0"),
        port=int(os.getenv("COACH_PORT", "8000")),
        workers=1,
        reload=_env_flag("COACH_RELOAD"),
        log_level=os.getenv("COACH_LOG_LEVEL", "info").lower(),
        # Let in-flight streams finish and background extraction drain
        timeout_graceful_shutdown=int(os.getenv("COACH_GRACEFUL_SHUTDOWN_SECONDS", "30")),
    )


if __name__ == "__main__":
    main()
