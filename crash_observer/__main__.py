import uvicorn

from .config import Settings


def main():
    settings = Settings.from_env()
    uvicorn.run("crash_observer.server:create_app", factory=True, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
