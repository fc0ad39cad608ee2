"""Run the API server: ``python -m quote_payments``."""
import uvicorn

from quote_payments.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run(
        "quote_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
