"""Authenticated real-time update client for the live equity dashboard.

Signs a user in against the dashboard backend, keeps one authenticated
push connection alive, fans price ticks and alerts out to UI consumers,
and raises desktop notifications for alerts and connection changes.

Architecture:
    DashboardApiClient.login() -> CredentialStore
    ConnectionManager (auth handshake, reconnect) -> UpdateBus
    -> symbol / alert / state subscribers
    UpdateBus alerts + connection changes -> NotificationGateway -> WebPush
"""
