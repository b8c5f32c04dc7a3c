"""Delivering stored events to tenant webhooks."""

from __future__ import annotations

from .delivery import (
    DeliveryClient,
    DeliveryReceipt,
    WebhookClientConfig,
    WebhookDeliveryClient,
)
from .payload import ActorPayload, DeliveryBatch, LogPayload, build_batch, encode_batch
from .worker import ForwardResult, ForwardWorker

__all__ = [
    "ActorPayload",
    "DeliveryBatch",
    "DeliveryClient",
    "DeliveryReceipt",
    "ForwardResult",
    "ForwardWorker",
    "LogPayload",
    "WebhookClientConfig",
    "WebhookDeliveryClient",
    "build_batch",
    "encode_batch",
]
