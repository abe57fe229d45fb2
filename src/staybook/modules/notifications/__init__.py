from staybook.modules.notifications.notifier import BookingNotifier

__all__ = ["BookingNotifier"]
