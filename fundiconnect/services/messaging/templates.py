"""Message bodies for each notification type (WhatsApp markdown)."""

from fundiconnect.services.bookings.models import Booking


def format_amount(amount: int) -> str:
    return f"KSH {amount:,}"


def _when(booking: Booking) -> tuple[str, str]:
    return booking.scheduled_date.strftime("%d/%m/%Y"), booking.scheduled_time


def render(booking: Booking, notification_type: str, response_window_minutes: int = 60) -> str:
    date, time = _when(booking)
    service = booking.service
    location = booking.location
    amount = format_amount(booking.total_amount)

    if notification_type == "booking_created":
        lines = [
            "*New Booking Request*",
            "",
            f"*Client:* {booking.client.full_name}",
            f"*Service:* {service}",
            f"*Location:* {location}",
            f"*Date:* {date}",
            f"*Time:* {time}",
            f"*Amount:* {amount}",
        ]
        if booking.description:
            lines += ["", f"*Details:* {booking.description}"]
        lines += ["", f"Please accept or reject this booking within {response_window_minutes} minutes."]
        return "\n".join(lines)

    if notification_type == "booking_accepted":
        return (
            "*Booking Confirmed*\n\n"
            f"Your booking for {service} has been accepted!\n"
            f"{date} at {time}\n"
            f"{location}\n\n"
            "The fundi will contact you soon with further details."
        )

    if notification_type == "booking_rejected":
        return (
            "*Booking Declined*\n\n"
            f"Unfortunately, your booking for {service} on {date} has been declined.\n\n"
            "Please search for another fundi or try a different time slot."
        )

    if notification_type == "booking_expired":
        return (
            "*Booking Expired*\n\n"
            f"Your booking request for {service} on {date} at {time} has expired as the fundi "
            f"did not respond within {response_window_minutes} minutes.\n\n"
            "Please search for another fundi or try booking again."
        )

    if notification_type == "payment_reminder":
        return (
            "*Payment Reminder*\n\n"
            f"Your booking for {service} is confirmed but payment is still pending.\n"
            f"Amount: {amount}\n\n"
            "Please complete your payment to secure your booking."
        )

    return f"FundiConnect Notification\n\nYou have an update regarding your booking for {service}."


def reply_instructions(booking: Booking, response_window_minutes: int = 60) -> str:
    """Free-text command convention for backends without interactive buttons."""

    return (
        "\n\nReply with:\n"
        f'"ACCEPT {booking.short_ref}" to accept\n'
        f'"REJECT {booking.short_ref}" to reject\n\n'
        f"You have {response_window_minutes} minutes to respond"
    )
