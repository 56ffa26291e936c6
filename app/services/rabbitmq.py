import json
import pika
from core.settings import settings


def publish_notification(message: dict) -> None:
    params = pika.URLParameters(settings.rabbitmq_url)
    conn = pika.BlockingConnection(params)
    try:
        ch = conn.channel()
        ch.queue_declare(queue=settings.notifications_queue, durable=True)

        ch.basic_publish(
            exchange="",
            routing_key=settings.notifications_queue,
            body=json.dumps(message, default=str).encode("utf-8"),
            properties=pika.BasicProperties(delivery_mode=2, content_type="application/json"),
        )
    finally:
        conn.close()
