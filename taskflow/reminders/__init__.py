"""Reminder subsystem (classifier, policy, dispatcher, scheduler, digests).

The scheduler normally runs in-process on the API's event loop through the
periodic runner; the Celery app in this package is the alternative worker
deployment and reuses the same scan, digest and channel-delivery code.
"""
