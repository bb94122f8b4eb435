"""
Realtime Service package.

Tracks which connection is interested in which streamer, game or trend feed
and pushes collector updates only to interested connections. Key modules:

- app.main: FastAPI app, WebSocket endpoint and collector ingest routes
- app.subscriptions: topic grammar and the topic registry
- app.ws: connection sessions, connection manager and message dispatch
- app.cache: last-known-value snapshots for replay on subscribe
- app.broadcast: the gateway collectors publish through
- app.auth: bearer credential verification
- app.supervisor: idle-connection sweep and reconnect tracking
- app.telemetry: client for the upstream collector service
"""
