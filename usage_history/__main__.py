import uvicorn

from usage_history.core.config import settings


def main() -> None:
    # log_config=None keeps the JSON handlers installed by the app lifespan
    uvicorn.run(
        "usage_history.main:app",
        host=settings.history_http_host,
        port=settings.history_http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
