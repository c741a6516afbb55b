import html
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Union

from polly.config.settings import settings
from polly.db.models import NotificationType
from polly.templates import email_templates as templates
from polly.utils.datetime_utils import to_utc, utc_now

POLL_SCOPED_TYPES = {
    NotificationType.POLL_CLOSING_24H,
    NotificationType.POLL_CLOSING_1H,
    NotificationType.POLL_CLOSED,
    NotificationType.RESULTS_ANNOUNCEMENT,
}

NOTIFICATION_TYPE_NAMES = {
    NotificationType.POLL_CLOSING_24H: "24h Closing Warning",
    NotificationType.POLL_CLOSING_1H: "1h Closing Warning",
    NotificationType.POLL_CLOSED: "Poll Closed",
    NotificationType.NEW_POLL: "New Poll Available",
    NotificationType.VOTING_REMINDER: "Voting Reminder",
    NotificationType.RESULTS_ANNOUNCEMENT: "Results Available",
}


class RenderedEmail(NamedTuple):
    subject: str
    html: str


class _TemplateValues(dict):
    """Missing placeholders render as empty strings"""

    def __missing__(self, key):
        return ""


def as_notification_type(value: Union[NotificationType, str]) -> NotificationType:
    if isinstance(value, NotificationType):
        return value
    return NotificationType(value)


def format_notification_type(notification_type: Union[NotificationType, str]) -> str:
    """Human readable name of a notification type."""
    try:
        return NOTIFICATION_TYPE_NAMES[as_notification_type(notification_type)]
    except (KeyError, ValueError):
        return str(notification_type).replace("_", " ").title()


def validate_template_data(
    notification_type: Union[NotificationType, str], data: Dict[str, Any]
) -> List[str]:
    """Return the list of problems that would make `data` unrenderable."""
    notification_type = as_notification_type(notification_type)
    errors: List[str] = []

    if not data.get("user_email"):
        errors.append("User email is required")

    if notification_type in POLL_SCOPED_TYPES:
        if not data.get("poll_id"):
            errors.append("Poll ID is required for poll-related notifications")
        if not data.get("poll_question"):
            errors.append("Poll question is required for poll-related notifications")
    elif notification_type == NotificationType.NEW_POLL:
        if not data.get("poll_id") or not data.get("poll_question"):
            errors.append("Poll ID and question are required for new poll notifications")
        if not data.get("creator_name"):
            errors.append("Creator name is required for new poll notifications")
    elif notification_type == NotificationType.VOTING_REMINDER:
        if not data.get("poll_id") or not data.get("poll_question"):
            errors.append("Poll ID and question are required for voting reminders")

    return errors


def sample_template_data(
    notification_type: Union[NotificationType, str], now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Placeholder poll data used by test sends."""
    notification_type = as_notification_type(notification_type)
    now = to_utc(now) if now else utc_now()

    data: Dict[str, Any] = {
        "poll_id": "999",
        "poll_question": "Test Poll: What is your favorite testing framework?",
        "creator_name": "Test Creator",
        "poll_options": ["Jest", "Vitest", "Mocha", "Cypress"],
        "total_votes": 42,
        "has_voted": False,
    }

    if notification_type == NotificationType.POLL_CLOSING_24H:
        data["time_until_close"] = "24 hours"
        data["closing_time"] = (now + timedelta(hours=24)).isoformat()
    elif notification_type == NotificationType.POLL_CLOSING_1H:
        data["time_until_close"] = "1 hour"
        data["closing_time"] = (now + timedelta(hours=1)).isoformat()
    elif notification_type in (
        NotificationType.POLL_CLOSED,
        NotificationType.RESULTS_ANNOUNCEMENT,
    ):
        data["poll_results"] = [
            {"option": "Jest", "votes": 18, "percentage": 42.9},
            {"option": "Vitest", "votes": 12, "percentage": 28.6},
            {"option": "Cypress", "votes": 8, "percentage": 19.0},
            {"option": "Mocha", "votes": 4, "percentage": 9.5},
        ]
        data["winning_options"] = ["Jest"]
    elif notification_type == NotificationType.VOTING_REMINDER:
        data["days_since_created"] = 3
    elif notification_type == NotificationType.NEW_POLL:
        data["poll_description"] = (
            "This is a test poll to demonstrate our notification system. "
            "Please vote on your preferred testing framework!"
        )

    return data


def _escape(value: Any) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def format_closing_time(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return str(value)
    return to_utc(moment).strftime("%Y-%m-%d %H:%M UTC")


class EmailTemplateRenderer:
    """Render notification emails from `polly.templates.email_templates`."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        company_name: str = "ALX-Polly",
        support_email: str = "support@alx-polly.com",
    ):
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")
        self.company_name = company_name
        self.support_email = support_email

    def enrich(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Add the links and branding every template can reference."""
        poll_id = data.get("poll_id")
        return {
            **data,
            "base_url": self.base_url,
            "poll_url": (
                f"{self.base_url}/polls/{poll_id}"
                if poll_id
                else data.get("poll_url", self.base_url)
            ),
            "unsubscribe_url": f"{self.base_url}/notifications/unsubscribe",
            "company_name": self.company_name,
            "support_email": self.support_email,
        }

    def render(
        self, notification_type: Union[NotificationType, str], data: Dict[str, Any]
    ) -> RenderedEmail:
        notification_type = as_notification_type(notification_type)
        values = self.enrich(data)

        subject = templates.SUBJECT_TEMPLATES[notification_type.value].format_map(
            _TemplateValues(
                {
                    key: str(value)
                    for key, value in values.items()
                    if isinstance(value, (str, int, float))
                }
            )
        )

        builders = {
            NotificationType.POLL_CLOSING_24H: self._poll_closing_24h,
            NotificationType.POLL_CLOSING_1H: self._poll_closing_1h,
            NotificationType.POLL_CLOSED: self._poll_closed,
            NotificationType.NEW_POLL: self._new_poll,
            NotificationType.VOTING_REMINDER: self._voting_reminder,
            NotificationType.RESULTS_ANNOUNCEMENT: self._results_announcement,
        }
        title, tagline, content, footer_note = builders[notification_type](values)

        body = templates.EMAIL_LAYOUT.format(
            title=_escape(title),
            tagline=_escape(tagline),
            content=content,
            footer_note=_escape(footer_note),
            unsubscribe_url=_escape(values["unsubscribe_url"]),
        )
        return RenderedEmail(subject=subject, html=templates.EMAIL_BASE_STYLES + body)

    # Fragments
    def _common(self, values: Dict[str, Any]) -> _TemplateValues:
        return _TemplateValues(
            user_name=_escape(values.get("user_name") or "there"),
            poll_question=_escape(values.get("poll_question")),
            creator_name=_escape(values.get("creator_name")),
            total_votes=_escape(values.get("total_votes") or 0),
        )

    def _poll_card(self, values: Dict[str, Any], details: str = "") -> str:
        return templates.POLL_CARD.format(
            poll_question=_escape(values.get("poll_question")), details=details
        )

    def _action(self, values: Dict[str, Any], label: str) -> str:
        return templates.ACTION_BUTTON.format(
            url=_escape(values["poll_url"]), label=_escape(label)
        )

    def _closing_details(self, values: Dict[str, Any]) -> str:
        closing = format_closing_time(values.get("closing_time"))
        if not closing:
            return ""
        return f"<p><strong>Closes:</strong> {_escape(closing)}</p>"

    def _results(self, values: Dict[str, Any]) -> str:
        winners = set(values.get("winning_options") or [])
        rows = []
        for result in values.get("poll_results") or []:
            rows.append(
                templates.RESULT_ROW.format(
                    winner_class=" winner" if result["option"] in winners else "",
                    option=_escape(result["option"]),
                    votes=_escape(result.get("votes", 0)),
                    percentage=_escape(result.get("percentage", 0)),
                )
            )
        return "\n".join(rows)

    def _total_votes_details(self, values: Dict[str, Any]) -> str:
        return f"<p><strong>Total votes:</strong> {_escape(values.get('total_votes') or 0)}</p>"

    # Per-type builders return (title, tagline, content html, footer note)
    def _poll_closing_24h(self, values):
        voted = bool(values.get("has_voted"))
        fields = self._common(values)
        fields.update(
            poll_card=self._poll_card(values, self._closing_details(values)),
            vote_status=(
                "Thank you for voting! You can still view the poll and see how others are voting."
                if voted
                else "You haven't voted yet. Make sure to cast your vote before the poll closes!"
            ),
            action=self._action(values, "View Poll" if voted else "Vote Now"),
        )
        footer = (
            "This notification was sent because you "
            f"{'voted on' if voted else 'are subscribed to notifications for'} this poll."
        )
        return (
            "Poll Closing Soon",
            "Don't miss your chance to vote!",
            templates.POLL_CLOSING_24H_CONTENT.format_map(fields),
            footer,
        )

    def _poll_closing_1h(self, values):
        voted = bool(values.get("has_voted"))
        fields = self._common(values)
        fields.update(
            poll_card=self._poll_card(values, self._closing_details(values)),
            vote_status=(
                "You've already voted. Thank you for participating!"
                if voted
                else "Last chance to vote! Don't miss out on having your say."
            ),
            action=self._action(values, "View Results" if voted else "Vote Now!"),
        )
        return (
            "Final Hour!",
            "Poll closing very soon",
            templates.POLL_CLOSING_1H_CONTENT.format_map(fields),
            "This is your final notification for this poll.",
        )

    def _poll_closed(self, values):
        winners = values.get("winning_options") or []
        if winners:
            winner_line = (
                f"Winner{'s' if len(winners) > 1 else ''}: "
                f"{_escape(', '.join(str(w) for w in winners))}"
            )
        elif values.get("poll_results"):
            winner_line = "It's a tie! Multiple options received the same number of votes."
        else:
            winner_line = ""

        fields = self._common(values)
        fields.update(
            participation="voted on" if values.get("has_voted") else "were following",
            poll_card=self._poll_card(values, self._total_votes_details(values)),
            results=self._results(values),
            winner_line=winner_line,
            action=self._action(values, "View Full Results"),
        )
        return (
            "Poll Results",
            "Voting has ended",
            templates.POLL_CLOSED_CONTENT.format_map(fields),
            "Thank you for participating in this poll!",
        )

    def _new_poll(self, values):
        details = ""
        if values.get("poll_description"):
            details += f"<p>{_escape(values['poll_description'])}</p>"
        options = values.get("poll_options") or []
        if options:
            items = "".join(f"<li>{_escape(option)}</li>" for option in options)
            details += f"<p><strong>Options:</strong></p><ul>{items}</ul>"

        fields = self._common(values)
        fields.update(
            poll_card=self._poll_card(values, details),
            action=self._action(values, "Vote Now"),
        )
        return (
            "New Poll Available",
            "Your input is needed",
            templates.NEW_POLL_CONTENT.format_map(fields),
            "You received this notification because you subscribed to new poll alerts.",
        )

    def _voting_reminder(self, values):
        days = values.get("days_since_created")
        details = ""
        if days:
            details = f"<p>Created {_escape(days)} day{'s' if days != 1 else ''} ago</p>"

        fields = self._common(values)
        fields.update(
            poll_card=self._poll_card(values, details),
            action=self._action(values, "Cast Your Vote"),
        )
        return (
            "Voting Reminder",
            "Don't forget to vote",
            templates.VOTING_REMINDER_CONTENT.format_map(fields),
            "This is a gentle reminder. You can disable voting reminders in your notification settings.",
        )

    def _results_announcement(self, values):
        fields = self._common(values)
        fields.update(
            poll_card=self._poll_card(values, self._total_votes_details(values)),
            results=self._results(values),
            action=self._action(values, "View Detailed Results"),
        )
        return (
            "Poll Results",
            "See what everyone voted for",
            templates.RESULTS_ANNOUNCEMENT_CONTENT.format_map(fields),
            "Stay tuned for more polls and results!",
        )
