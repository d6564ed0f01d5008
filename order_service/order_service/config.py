"""Environment-driven settings for the Order Service."""

import os

from pydantic import BaseModel, Field


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration.

    Attributes:
        kafka_bootstrap_servers: Comma-separated Kafka broker addresses
        log_level: Minimum level for the service logger
        log_file: Optional rotating log file path
        database_url: SQLAlchemy URL of the order database
        rpc_timeout_seconds: Upper bound for every catalog/payment round-trip
        rpc_reply_topic: Topic the service consumes RPC replies from
        payment_events_topic: Topic carrying payment confirmations
        consumer_group_id: Consumer group for payment confirmations
        payment_currency: Currency code passed through to payment sessions
        strict_status_transitions: Reject status moves outside the allowed table
    """

    kafka_bootstrap_servers: str = "kafka:9092"
    log_level: str = "INFO"
    log_file: str | None = None
    database_url: str = "sqlite:///./orders.db"
    rpc_timeout_seconds: float = Field(5.0, gt=0)
    rpc_reply_topic: str = "orders.rpc.replies"
    payment_events_topic: str = "payments.succeeded"
    consumer_group_id: str = "order-service"
    payment_currency: str = Field("usd", min_length=3, max_length=3)
    strict_status_transitions: bool = False


def get_settings() -> Settings:
    """Build settings from the process environment."""
    return Settings(
        kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        database_url=os.getenv("DATABASE_URL", "sqlite:///./orders.db"),
        rpc_timeout_seconds=float(os.getenv("RPC_TIMEOUT_SECONDS", "5.0")),
        rpc_reply_topic=os.getenv("RPC_REPLY_TOPIC", "orders.rpc.replies"),
        payment_events_topic=os.getenv("PAYMENT_EVENTS_TOPIC", "payments.succeeded"),
        consumer_group_id=os.getenv("CONSUMER_GROUP_ID", "order-service"),
        payment_currency=os.getenv("PAYMENT_CURRENCY", "usd"),
        strict_status_transitions=_env_flag("STRICT_STATUS_TRANSITIONS"),
    )
