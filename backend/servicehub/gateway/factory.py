import logging

from servicehub.config import Settings
from servicehub.gateway.base import Gateway
from servicehub.gateway.sqlite_gateway import SqliteGateway

logger = logging.getLogger(__name__)


def create_gateway(settings: Settings) -> Gateway:
    if settings.gateway_backend == "firebase":
        from servicehub.gateway.firebase_gateway import FirebaseBackend, FirebaseGateway

        backend = FirebaseBackend(
            credentials_path=settings.firebase_credentials_path,
            storage_bucket=settings.firebase_storage_bucket,
            web_api_key=settings.firebase_web_api_key,
            http_timeout_seconds=settings.http_timeout_seconds,
        )
        logger.info("Using Firebase gateway")
        return FirebaseGateway(backend)

    logger.info("Using SQLite gateway at %s", settings.db_path)
    return SqliteGateway.open(
        db_path=settings.db_path,
        blob_dir=settings.blob_dir,
        blob_base_url=settings.blob_base_url,
    )
