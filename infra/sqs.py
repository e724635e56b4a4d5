"""SQS client for the enrichment job queue."""

import json
import os
from typing import List, Dict, Any, Optional

import boto3
from loguru import logger

# SQS hard limits
MAX_DELAY_SECONDS = 900
MAX_VISIBILITY_TIMEOUT = 43200


def get_sqs_client():
    """Get SQS client using environment credentials."""
    return boto3.client(
        "sqs",
        region_name=os.getenv("AWS_REGION", "eu-south-1"),
    )


def get_queue_url() -> str:
    """Get the enrichment queue URL from environment."""
    url = os.getenv("SQS_ENRICHMENT_QUEUE_URL")
    if not url:
        raise ValueError("SQS_ENRICHMENT_QUEUE_URL environment variable not set")
    return url


def is_fifo(queue_url: str) -> bool:
    return queue_url.endswith(".fifo")


def send_message(
    queue_url: str,
    body: Dict[str, Any],
    delay_seconds: int = 0,
    group_id: Optional[str] = None,
    dedup_id: Optional[str] = None,
) -> str:
    """Send a single message to SQS.

    FIFO queues need a group id and take a deduplication id; they ignore
    per-message delays, so delay_seconds is only sent to standard queues.

    Returns message ID.
    """
    client = get_sqs_client()
    params: Dict[str, Any] = {
        "QueueUrl": queue_url,
        "MessageBody": json.dumps(body),
    }
    if is_fifo(queue_url):
        params["MessageGroupId"] = group_id or "default"
        if dedup_id:
            params["MessageDeduplicationId"] = dedup_id
    elif delay_seconds > 0:
        params["DelaySeconds"] = min(int(delay_seconds), MAX_DELAY_SECONDS)
    response = client.send_message(**params)
    return response["MessageId"]


def receive_messages(
    queue_url: str,
    max_messages: int = 1,
    wait_time_seconds: int = 20,
    visibility_timeout: int = 1800,
) -> List[Dict[str, Any]]:
    """Receive messages from SQS with long polling.

    Args:
        queue_url: SQS queue URL
        max_messages: Max messages to receive (1-10)
        wait_time_seconds: Long polling wait time
        visibility_timeout: How long message is hidden after receive

    Returns:
        List of messages with 'body' (parsed JSON) and 'receipt_handle'.
    """
    client = get_sqs_client()

    response = client.receive_message(
        QueueUrl=queue_url,
        MaxNumberOfMessages=min(max_messages, 10),
        WaitTimeSeconds=wait_time_seconds,
        VisibilityTimeout=visibility_timeout,
    )

    messages = []
    for msg in response.get("Messages", []):
        try:
            body = json.loads(msg["Body"])
        except json.JSONDecodeError:
            logger.error(f"Dropping undecodable SQS message {msg['MessageId']}")
            delete_message(queue_url, msg["ReceiptHandle"])
            continue
        messages.append({
            "body": body,
            "receipt_handle": msg["ReceiptHandle"],
            "message_id": msg["MessageId"],
        })

    return messages


def delete_message(queue_url: str, receipt_handle: str) -> None:
    """Delete a message from SQS after successful processing."""
    client = get_sqs_client()
    client.delete_message(
        QueueUrl=queue_url,
        ReceiptHandle=receipt_handle,
    )


def change_message_visibility(queue_url: str, receipt_handle: str, timeout_seconds: int) -> None:
    """Hide a received message for another ``timeout_seconds``."""
    client = get_sqs_client()
    client.change_message_visibility(
        QueueUrl=queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=max(0, min(int(timeout_seconds), MAX_VISIBILITY_TIMEOUT)),
    )


def get_queue_attributes(queue_url: str) -> Dict[str, str]:
    """Get queue attributes like message count."""
    client = get_sqs_client()
    response = client.get_queue_attributes(
        QueueUrl=queue_url,
        AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
    )
    return response.get("Attributes", {})
