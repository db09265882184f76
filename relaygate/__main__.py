import logging

from waitress import serve

from .app import create_app
from .config import Settings, configure_logging

logger = logging.getLogger("relaygate")


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    logger.info("=" * 60)
    logger.info("Starting relaygate on %s:%d", settings.host, settings.port)
    logger.info("Target: %s", settings.target_url)
    logger.info("Upstream: %s:%d (sticky %d min)", settings.proxy_host, settings.proxy_port, settings.proxy_session_time)
    logger.info(
        "Retries - Max: %d, Backoff: %.1fs, Timeout: %.0fs",
        settings.max_retries, settings.retry_backoff, settings.request_timeout,
    )
    logger.info("=" * 60)

    app = create_app(settings)
    try:
        serve(
            app,
            host=settings.host,
            port=settings.port,
            threads=settings.threads,
            channel_timeout=int(settings.request_timeout * settings.max_retries + 30),
        )
    finally:
        app.extensions["relaygate"]["fetcher"].close()


if __name__ == "__main__":
    main()
