import uvicorn

from .config import settings


def run(host: str | None = None, port: int | None = None) -> None:
    """Serve ``shiftbook.main:app``; the app configures its own logging."""
    uvicorn.run(
        "shiftbook.main:app",
        host=host or settings.HOST,
        port=int(port or settings.PORT),
        reload=bool(settings.RELOAD),
        log_config=None,
    )


if __name__ == "__main__":
    run()
