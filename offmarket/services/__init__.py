"""
Services module for business logic separation.

This module contains the service classes behind the API endpoints:
persistent log sink, alert notifiers, edge function client, cron jobs and
log statistics.
"""
