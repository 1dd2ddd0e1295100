"""
Broker Console - Server Package
=================================
Runtime control plane for the MQTT broker.

This package provides:
- Stateless JWT session authentication for operators
- A registry of network listeners that can be added/removed at runtime
- A durable settings store for discovery and TLS configuration
- mDNS discovery broadcast that can be reconfigured live
- FastAPI management API plus the bundled single-page UI

Architecture:
    main.py      -> FastAPI app creation, error rendering, static UI
    routes.py    -> All /api/v1 endpoint handlers
    auth.py      -> Token issue/validation, route protection
    ledger.py    -> Credential ledger (users.json, bcrypt secrets)
    settings.py  -> settings.json store with reader/writer locking
    discovery.py -> mDNS advertiser lifecycle
    listeners.py -> Listener kinds and the listener registry
    hub.py       -> Connection hub behind the listeners (stats, client close)
    storage.py   -> Stored clients/subscriptions/retained surface
    config.py    -> config.yaml and .env loading
    service.py   -> Component wiring, startup and shutdown
"""
