"""Push-channel client: connection state machine, transports, and fan-out.

Flow:
    WebSocketTransport frames -> ConnectionManager (auth handshake,
    generation-checked reader) -> UpdateBus.publish_ticks / publish_alert
    -> subscribed callbacks and the tick snapshot
"""
