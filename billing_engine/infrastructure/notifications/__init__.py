from billing_engine.infrastructure.notifications.dispatcher import LoggingNotificationDispatcher

__all__ = ["LoggingNotificationDispatcher"]
