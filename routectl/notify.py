import html
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

SUBJECTS = {
    "CONFIRMATION": "Booking confirmed - {job_number}",
    "REMINDER": "Reminder: your service is tomorrow - {job_number}",
    "UPDATE": "Booking updated - {job_number}",
    "CANCELLATION": "Booking cancelled - {job_number}",
}

INTROS = {
    "CONFIRMATION": "Your booking is confirmed.",
    "REMINDER": "This is a reminder that your service is scheduled for tomorrow.",
    "UPDATE": "Your booking has been updated.",
    "CANCELLATION": "Your booking has been cancelled.",
}


def render_email(email_type: str, booking, update_description: Optional[str] = None) -> Dict[str, str]:
    """Subject and HTML body for one booking email."""
    if email_type not in SUBJECTS:
        raise ValueError(f"Unknown email type: {email_type}")

    lines = [INTROS[email_type]]
    if email_type == "UPDATE":
        lines.append(update_description or "Your booking details have been updated.")
    lines.append(
        f"{booking['address']}, {booking['city']}, {booking['state']} {booking['zip']}"
    )
    if booking["service_date"]:
        when = booking["service_date"]
        if booking["time_of_day"]:
            when += f" ({booking['time_of_day'].lower()})"
        lines.append(f"Date: {when}")

    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    return {
        "subject": SUBJECTS[email_type].format(job_number=booking["job_number"]),
        "html": f"<p>Hi {html.escape(booking['customer_name'])},</p>{body}",
    }


class LogEmailSender:
    """Sender that only logs; stands in where no mail transport is configured."""

    def send(self, to: str, subject: str, html: str) -> bool:
        logger.info(f"Email to {to}: {subject}")
        return True
