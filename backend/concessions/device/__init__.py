# Overview: Device-side runtime for POS terminals and kiosks.

"""
Device runtime

Runs on the counter terminal or kiosk, next to the UI:

- storage.LocalStore        durable JSON key/value store shared by tabs
- client.FingerprintedClient HTTP client; every mutation carries a fingerprint
- offline_queue             FIFO of orders placed while the server was unreachable
- cart                      carts and the stock reservation view
- broadcast.BroadcastClient server-push consumer with polling fallback

Only the pure modules of the server package (units, consumption, pricing)
are used here; nothing in this package touches the database.
"""
