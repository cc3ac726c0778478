"""Mailbox synchronization: coordinator and reconciler"""
from portal_mail.core.sync.coordinator import SyncCoordinator, SyncOptions, SyncResult, later_watermark
from portal_mail.core.sync.reconciler import MessageReconciler, ReconcileStats

__all__ = [
    'SyncCoordinator',
    'SyncOptions',
    'SyncResult',
    'later_watermark',
    'MessageReconciler',
    'ReconcileStats',
]
