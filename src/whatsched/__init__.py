"""whatsched - WhatsApp session relay with scheduled delivery.

Modules:
    - store: JSON document store (message log, scheduled queue, sessions)
    - provider: Session provider contract + Green API bridge
    - session: Session lifecycle state machine and reconnect logic
    - cache: Activity-gated conversation cache
    - delivery: Scheduled-delivery engine
    - broadcast: Event fan-out to WebSocket observers
    - service: Wires the above together for the web server and CLI
"""

__version__ = "0.3.0"
