"""
Bookings Domain

- events.py: verified webhook payloads parsed into a closed set of event kinds
- reconciler.py: applies those events to bookings (monotonic status graph)
- repository.py / service.py / router.py: checkout and booking lookups
"""
