"""
Scheduling Domain

Keeps each mentor's Calendly OAuth credential alive and reads availability
through it.

- credential_store.py: encrypted CalendlyCredential reads/writes
- token_manager.py: proactive refresh with a 30 minute buffer
- availability.py: per-day open slots with a single refresh-and-retry on 401
- errors.py: NotConnected / RefreshFailed / ProviderUnavailable / ...
"""
