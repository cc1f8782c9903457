import uvicorn

from config import settings


def main():
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL,
        reload=settings.RELOAD,
    )


if __name__ == "__main__":
    main()
