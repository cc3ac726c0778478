"""
Delivery tracking: bounce classification, retry backoff and open tracking
"""
from portal_mail.core.tracking.bounce import BounceClassification, classify_bounce, calculate_next_retry
from portal_mail.core.tracking.open_tracker import (
    OpenTracker, TRANSPARENT_GIF, NO_CACHE_HEADERS, generate_tracking_pixel_id, tracking_pixel_html,
    inject_tracking_pixel, lookup_location,
)

__all__ = [
    'BounceClassification',
    'classify_bounce',
    'calculate_next_retry',
    'OpenTracker',
    'TRANSPARENT_GIF',
    'NO_CACHE_HEADERS',
    'generate_tracking_pixel_id',
    'tracking_pixel_html',
    'inject_tracking_pixel',
    'lookup_location',
]
