"""Customer notifications and booking reminders.

Both are fire-and-forget: they run after the booking transaction has
committed, and a failure is logged and never propagated to the caller.
"""
from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Booking, BookingReminder, Notification, naive_utc_now


class NotificationService:
    def _notify(self, booking: Booking, notification_type: str, title: str, message: str) -> None:
        if booking.client_id is None:
            # Guests are reached over email/SMS, which is delivered elsewhere.
            current_app.logger.info(
                "Skipping in-app %s notification for guest booking %s", notification_type, booking.booking_id
            )
            return
        try:
            db.session.add(
                Notification(
                    user_id=booking.client_id,
                    booking_id=booking.booking_id,
                    title=title,
                    message=message,
                    notification_type=notification_type,
                )
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to record %s notification for booking %s", notification_type, booking.booking_id, exc_info=exc
            )

    def send_booking_confirmation(self, booking: Booking) -> None:
        self._notify(
            booking,
            "booking_confirmed",
            "Booking Confirmed",
            f"Your booking has been confirmed for {booking.starts_at.strftime('%B %d, %Y at %I:%M %p')} UTC.",
        )

    def send_cancellation(self, booking: Booking, reason: str | None = None) -> None:
        message = "Your booking has been cancelled."
        if reason:
            message = f"{message} {reason}"
        self._notify(booking, "booking_cancelled", "Booking Cancelled", message)

    def send_reschedule_notice(self, booking: Booking) -> None:
        self._notify(
            booking,
            "booking_rescheduled",
            "Booking Rescheduled",
            f"Your booking has been moved to {booking.starts_at.strftime('%B %d, %Y at %I:%M %p')} UTC.",
        )

    def send_review_notice(self, booking: Booking) -> None:
        self._notify(
            booking,
            "booking_under_review",
            "Booking Under Review",
            "Your payment was received. The offer on this booking is no longer valid, "
            "so our team will review the booking and contact you shortly.",
        )


class ReminderScheduler:
    def schedule_booking_reminders(self, booking_id: int) -> list[BookingReminder]:
        """Queue reminders before a confirmed booking starts. Reminders already due are skipped."""
        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise LookupError(f"Booking {booking_id} not found")

        now = naive_utc_now()
        existing = {
            reminder.remind_at
            for reminder in BookingReminder.query.filter(BookingReminder.booking_id == booking_id)
        }
        created = []
        for offset in current_app.config["REMINDER_OFFSETS_MINUTES"]:
            remind_at = booking.starts_at - timedelta(minutes=offset)
            if remind_at <= now or remind_at in existing:
                continue
            reminder = BookingReminder(booking_id=booking_id, remind_at=remind_at)
            db.session.add(reminder)
            created.append(reminder)
        db.session.commit()
        return created


def get_notifier() -> NotificationService:
    return current_app.extensions.get("booking_notifier") or NotificationService()


def get_reminder_scheduler() -> ReminderScheduler:
    return current_app.extensions.get("booking_reminders") or ReminderScheduler()


def schedule_reminders_safely(booking_id: int) -> None:
    try:
        get_reminder_scheduler().schedule_booking_reminders(booking_id)
    except Exception as exc:  # reminder failures never reverse a settled payment
        db.session.rollback()
        current_app.logger.exception("Error scheduling booking reminders for booking %s", booking_id, exc_info=exc)
