"""Pulling audit events from the remote log API."""

from __future__ import annotations

from .client import GoogleReportsClient, RemoteLogClient, ReportsClientConfig
from .models import AccessGrant, RawRecord
from .normalize import external_id_for, normalize_record, normalize_records
from .worker import FetchConfig, FetchResult, FetchWindow, FetchWorker, ForwardEnqueuer

__all__ = [
    "AccessGrant",
    "FetchConfig",
    "FetchResult",
    "FetchWindow",
    "FetchWorker",
    "ForwardEnqueuer",
    "GoogleReportsClient",
    "RawRecord",
    "RemoteLogClient",
    "ReportsClientConfig",
    "external_id_for",
    "normalize_record",
    "normalize_records",
]
