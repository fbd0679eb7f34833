"""
Inngest Functions Registry.

This module exports all Inngest functions for registration with the serve endpoint.
"""

from .affiliate import sync_connect_status_fn
from .notifications import (
    threshold_reached_email_fn,
    payout_result_email_fn,
    affiliate_welcome_email_fn,
    refund_processed_email_fn,
)

# All functions to register with Inngest
all_functions = [
    sync_connect_status_fn,
    # Notification emails
    threshold_reached_email_fn,
    payout_result_email_fn,
    affiliate_welcome_email_fn,
    refund_processed_email_fn,
]

__all__ = [
    "all_functions",
    "sync_connect_status_fn",
    # Notification emails
    "threshold_reached_email_fn",
    "payout_result_email_fn",
    "affiliate_welcome_email_fn",
    "refund_processed_email_fn",
]
