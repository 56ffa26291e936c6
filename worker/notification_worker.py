import json
import logging
import os
import smtplib
import sys
import time
from email.mime.text import MIMEText
from typing import Any, Dict, Tuple

import pika
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

sys.path.append("/app")

load_dotenv()

from core.logging import setup_logging
from core.settings import settings
from models.orm_user import UserEntity

logger = logging.getLogger("notification_worker")

RABBITMQ_URL = os.getenv("RABBITMQ_URL", settings.rabbitmq_url)
QUEUE_NAME = os.getenv("NOTIFICATIONS_QUEUE", settings.notifications_queue)
DATABASE_URL = os.getenv("DATABASE_URL", settings.database_url)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEMPLATES = {
    "subscription-expired": (
        "Your Trading Academy subscription has expired",
        "Hi {name},\n\n"
        "Your {plan} subscription ended on {period_end}. Your account is now on the free plan.\n"
        "Renew any time from {app_url}/billing to get your full access back.\n",
    ),
    "subscription-expiring-soon": (
        "Your Trading Academy subscription renews soon",
        "Hi {name},\n\n"
        "Your {plan} subscription ends on {period_end} ({days_left} day(s) left).\n"
        "Make sure your payment goes through at {app_url}/billing to keep your access.\n",
    ),
}


def connect_with_retry(params: pika.URLParameters, retries: int = 10, delay: int = 5) -> pika.BlockingConnection:
    for attempt in range(1, retries + 1):
        try:
            logger.info("Attempting to connect to RabbitMQ (%s/%s)...", attempt, retries)
            return pika.BlockingConnection(params)
        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("Connection failed: %s. Retrying in %s seconds...", e, delay)
            time.sleep(delay)
    raise RuntimeError("Failed to connect to RabbitMQ after multiple retries.")


def render(template: str, data: Dict[str, Any], user: UserEntity) -> Tuple[str, str]:
    if template not in TEMPLATES:
        raise KeyError(f"Unknown notification template '{template}'")
    subject, body = TEMPLATES[template]
    period_end = str(data.get("current_period_end") or "")[:10]
    return subject, body.format(
        name=user.first_name or user.username,
        plan=data.get("plan") or "current",
        period_end=period_end,
        days_left=data.get("days_left", "?"),
        app_url=settings.app_url,
    )


def send_email(to_email: str, subject: str, body: str) -> None:
    if not settings.smtp_host:
        logger.info("[MOCK EMAIL] To: %s | %s\n%s", to_email, subject, body)
        return

    msg = MIMEText(body)
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from
    msg["To"] = to_email

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
        server.starttls()
        if settings.smtp_user:
            server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.smtp_from, [to_email], msg.as_string())


def process_message(ch, method, properties, body: bytes):
    try:
        payload = json.loads(body)
        user_id = int(payload["user_id"])
        template = str(payload["template"])
        data = payload.get("data") or {}
    except (ValueError, KeyError, TypeError):
        logger.error("Invalid message format, dropping: %r", body)
        ch.basic_ack(delivery_tag=method.delivery_tag)
        return

    db = SessionLocal()
    try:
        user = db.query(UserEntity).filter(UserEntity.id == user_id).first()
        if not user:
            logger.warning("User %s not found, dropping %s notification", user_id, template)
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return

        subject, text = render(template, data, user)
        send_email(user.email, subject, text)
        ch.basic_ack(delivery_tag=method.delivery_tag)
        logger.info("Sent %s notification to user %s", template, user_id)

    except KeyError as e:
        logger.error("%s, dropping message", e)
        ch.basic_ack(delivery_tag=method.delivery_tag)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error for user %s: %s, requeueing", user_id, e)
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
    finally:
        db.close()


def main():
    setup_logging()
    params = pika.URLParameters(RABBITMQ_URL)
    connection = connect_with_retry(params)
    channel = connection.channel()

    channel.queue_declare(queue=QUEUE_NAME, durable=True)
    channel.basic_qos(prefetch_count=1)
    channel.basic_consume(queue=QUEUE_NAME, on_message_callback=process_message, auto_ack=False)

    logger.info("Worker started. Waiting for notifications. CTRL+C to exit.")
    channel.start_consuming()


if __name__ == "__main__":
    main()
