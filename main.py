import uvicorn

from task_runner.settings import get_settings


def main() -> None:
    """Serve the task API on ``HOST``:``PORT``."""
    settings = get_settings()
    uvicorn.run(
        "task_runner.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
