"""Ad report cache backend.

Keeps per-client Meta/Google Ads report snapshots fresh, monitors cache
health and normalizes platform conversion data into canonical metrics.
"""
