import json
import logging
import threading
import time

import pika
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from learnpay import database, models
from learnpay.errors import LearnpayError
from learnpay.payments import PaymentLifecycle, VerificationResult

logger = logging.getLogger("learnpay.events")

EXCHANGE = "learnpay_events"
GATEWAY_ROUTING_KEY = "gateway.events.#"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    try:
        params = pika.URLParameters(rabbitmq_url)
        connection = pika.BlockingConnection(params)
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event, default=str)
        channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=body)
        connection.close()
    except Exception:
        # the state change is already committed; a lost notification must not fail the request
        logger.exception("Error publishing %s to %s", event.get("type"), routing_key)


def payment_event(event_type: str, payment: models.Payment) -> dict:
    return {
        "type": event_type,
        "payload": {
            "payment_id": payment.id,
            "user_id": payment.user_id,
            "course_id": payment.course_id,
            "payment_type": payment.payment_type,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "status": payment.status,
        },
    }


def enrollment_event(event_type: str, enrollment: models.Enrollment) -> dict:
    return {
        "type": event_type,
        "payload": {
            "enrollment_id": enrollment.id,
            "user_id": enrollment.user_id,
            "course_id": enrollment.course_id,
            "payment_id": enrollment.payment_id,
            "expires_at": enrollment.expires_at.isoformat(),
        },
    }


def verification_events(result: VerificationResult):
    """(routing_key, event) pairs announcing a fresh verification; duplicates announce nothing."""
    if result.already_processed:
        return []
    events = [("payment.events.completed", payment_event("PaymentCompleted", result.payment))]
    if result.enrollment is not None:
        events.append(("enrollment.events.activated", enrollment_event("EnrollmentActivated", result.enrollment)))
    return events


def publish_events(rabbitmq_url: str, events):
    for routing_key, event in events:
        publish_event(rabbitmq_url, routing_key, event)


def handle_gateway_event(body: dict, db: Session, lifecycle: PaymentLifecycle):
    """
    Apply one gateway notification forwarded by the webhook relay.

    ``PaymentCaptured`` runs the same verification as the client callback, so
    a capture delivered both ways (or redelivered) completes the payment once.
    Returns the verification result for captures, the payment for failures
    and None for ignored types.
    """
    event_type = body.get("type")
    payload = body.get("payload", {})

    if event_type == "PaymentCaptured":
        return lifecycle.verify(
            db,
            payload.get("payment_id"),
            payload.get("order_id"),
            payload.get("gateway_payment_id"),
            payload.get("signature"),
        )
    if event_type == "PaymentFailed":
        return lifecycle.fail(db, payload.get("payment_id"), payload.get("reason") or "payment failed at gateway")

    logger.info("Ignoring gateway event type=%s", event_type)
    return None


def process_gateway_message(ch, method, body, lifecycle: PaymentLifecycle, rabbitmq_url: str):
    """
    Ack after success or an idempotent no-op, requeue transient failures, and
    drop messages that can never succeed (bad signature, unknown payment).
    """
    requeue = False
    try:
        message = json.loads(body)
        db = database.SessionLocal()
        try:
            result = handle_gateway_event(message, db, lifecycle)
            # build payloads while the session can still load expired attributes
            pending = verification_events(result) if isinstance(result, VerificationResult) else []
        finally:
            db.close()
        publish_events(rabbitmq_url, pending)
        ch.basic_ack(delivery_tag=method.delivery_tag)
        logger.info("Gateway message processed and acked: %s", method.delivery_tag)
        return
    except LearnpayError as exc:
        requeue = exc.retryable
        logger.warning("Gateway message %s rejected (%s): %s", method.delivery_tag, exc.code, exc.message)
    except OperationalError:
        requeue = True
        logger.exception("Store unavailable while processing gateway message %s", method.delivery_tag)
    except Exception:
        logger.exception("Error processing gateway message %s", method.delivery_tag)
    try:
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=requeue)
    except Exception:
        logger.exception("Could not nack gateway message %s", method.delivery_tag)


def _consumer_runloop(database_url: str, rabbitmq_url: str, lifecycle: PaymentLifecycle, queue_name: str = ""):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    database.init_db(database_url)

    while True:
        conn = None
        try:
            params = pika.URLParameters(rabbitmq_url)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=True, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=EXCHANGE, queue=actual_queue, routing_key=GATEWAY_ROUTING_KEY)
            logger.info("Gateway consumer bound queue=%s to %s with key=%s", actual_queue, EXCHANGE, GATEWAY_ROUTING_KEY)

            def callback(ch, method, properties, body):
                process_gateway_message(ch, method, body, lifecycle, rabbitmq_url)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            logger.info("Gateway consumer starting to consume on queue: %s", actual_queue)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in consumer loop")
        finally:
            try:
                if conn and conn.is_open:
                    conn.close()
            except Exception:
                logger.debug("Ignoring error while closing consumer connection", exc_info=True)

        logger.info("Gateway consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None


def start_consumer(database_url: str, rabbitmq_url: str, lifecycle: PaymentLifecycle, queue_name: str = ""):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(
            target=_consumer_runloop,
            args=(database_url, rabbitmq_url, lifecycle, queue_name),
            daemon=True,
        )
        _consumer.start()
