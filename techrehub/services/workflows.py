"""Structured-input workflows: booking, quotation, product quotation, demo request.

Every workflow reads a comma-separated positional field list, validates it,
and after explicit confirmation turns it into a ``DomainRecordRequest``.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, time

from techrehub.services.catalog import CatalogItem
from techrehub.services.errors import ValidationError
from techrehub.services.intent_classifier import normalize_text
from techrehub.services.state_machine import Stage

YES_CONFIRMATION_PHRASES = {
    "yes",
    "y",
    "yeah",
    "yep",
    "yes please",
    "yes confirm",
    "confirm",
    "correct",
    "ok",
    "okay",
    "sure",
}
NO_CONFIRMATION_PHRASES = {
    "no",
    "n",
    "nope",
    "no retry",
    "retry",
    "wrong",
    "incorrect",
    "edit",
    "no edit details",
}

DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d")
TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%I %p", "%I%p", "%H:%M")

_COMMAND_RE = re.compile(r"^\s*(productquote|book|quote|demo)\s*:", re.IGNORECASE)


def classify_confirmation(text: str) -> str:
    """Classify a reply to a confirmation prompt as yes/no/unknown.

    Only whole-phrase matches count; mixed replies stay unknown.
    """
    normalized = normalize_text(text)
    if normalized in YES_CONFIRMATION_PHRASES:
        return "yes"
    if normalized in NO_CONFIRMATION_PHRASES:
        return "no"
    return "unknown"


def parse_booking_date(value: str) -> date:
    cleaned = (value or "").strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    raise ValidationError(
        f"'{cleaned}' is not a valid date. Please use DD/MM/YYYY, for example 25/05/2025.",
        expected_format="DD/MM/YYYY",
    )


def parse_booking_time(value: str) -> time:
    cleaned = re.sub(r"\s+", " ", (value or "").strip()).upper()
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).time()
        except ValueError:
            continue
    raise ValidationError(
        f"'{value.strip()}' is not a valid time. Please use HH:MM AM/PM, for example 10:00 AM.",
        expected_format="HH:MM AM/PM",
    )


def split_fields(text: str) -> list[str]:
    return [part.strip() for part in (text or "").split(",")]


def match_command(text: str) -> str | None:
    """Return the workflow name for an explicit ``Book:``-style command, if any."""
    match = _COMMAND_RE.match(text or "")
    if not match:
        return None
    return COMMAND_WORKFLOWS[match.group(1).lower()]


@dataclass(frozen=True)
class DomainRecordRequest:
    kind: str
    reference: str
    user_id: str
    platform: str
    fields: dict
    item_id: str | None = None


@dataclass
class Workflow:
    name: str
    command: str
    reference_prefix: str
    awaiting_stage: Stage
    confirming_stage: Stage
    field_names: tuple[str, ...]
    field_labels: tuple[str, ...]
    min_fields: int
    example: str
    missing_message: str
    operator_event: str
    item_kind: str | None = None
    defaults: dict[str, str] = field(default_factory=dict)
    join_tail: bool = False
    confirm_title: str = "Yes, Confirm"
    retry_title: str = "No, Retry"

    @property
    def format_hint(self) -> str:
        placeholders = ", ".join(f"[{label}]" for label in self.field_labels)
        return f"{self.command}: {placeholders}"

    def new_reference(self) -> str:
        return f"{self.reference_prefix}{secrets.token_hex(4).upper()}"

    def strip_command(self, text: str) -> str:
        stripped = re.sub(rf"^\s*{re.escape(self.command)}\s*:", "", text or "", flags=re.IGNORECASE)
        return stripped.strip()

    def parse(self, text: str) -> dict[str, str]:
        """Split free text into named fields. Raises ValidationError when incomplete."""
        parts = split_fields(self.strip_command(text))
        if len([part for part in parts if part]) < self.min_fields:
            raise ValidationError(self.missing_message, expected_format=self.format_hint)

        count = len(self.field_names)
        if self.join_tail and len(parts) > count:
            parts = [*parts[: count - 1], ", ".join(part for part in parts[count - 1 :] if part)]

        fields: dict[str, str] = {}
        for index, name in enumerate(self.field_names):
            value = parts[index] if index < len(parts) else ""
            if not value:
                if index < self.min_fields:
                    label = self.field_labels[index]
                    raise ValidationError(
                        f"The {label.lower()} is missing. {self.missing_message}",
                        expected_format=self.format_hint,
                    )
                value = self.defaults.get(name, "")
            fields[name] = value
        self.validate(fields)
        return fields

    def validate(self, fields: dict[str, str]) -> None:
        return None

    def instructions(self, item: CatalogItem | None = None) -> str:
        subject = f" for *{item.name}*" if item else ""
        lines = [f"{self._icon} To submit your {self.title.lower()}{subject}, please provide:", ""]
        for index, label in enumerate(self.field_labels, start=1):
            suffix = "" if index <= self.min_fields else " (optional)"
            lines.append(f"{index}. {label}{suffix}")
        lines += ["", f"Format: {self.format_hint}", "", f"Example: {self.example}"]
        return "\n".join(lines)

    def retry_text(self, reason: str = "") -> str:
        prefix = f"{reason}\n\n" if reason else ""
        return f"{prefix}Please provide your {self.title.lower()} details in this format:\n{self.format_hint}\n\nExample: {self.example}"

    def summary(self, fields: dict[str, str]) -> str:
        lines = [f"{self._icon} *{self.title} Summary*", ""]
        for name, label in zip(self.field_names, self.field_labels):
            lines.append(f"{label}: {fields.get(name, '')}")
        lines += ["", "Is this information correct? (Yes/No)"]
        return "\n".join(lines)

    def confirmed_text(self, reference: str) -> str:
        return (
            f"✅ *{self.title} Confirmed!*\n\n"
            f"{self._next_steps}\n\n"
            f"Reference Number: {reference}"
        )

    def build_request(
        self,
        *,
        reference: str,
        user_id: str,
        platform: str,
        fields: dict[str, str],
        item_id: str | None = None,
    ) -> DomainRecordRequest:
        return DomainRecordRequest(
            kind=self.name,
            reference=reference,
            user_id=user_id,
            platform=platform,
            fields=dict(fields),
            item_id=item_id,
        )

    def operator_payload(self, request: DomainRecordRequest) -> dict:
        return {
            "reference": request.reference,
            "from": request.user_id,
            "platform": request.platform,
            "item": request.item_id,
            **request.fields,
        }

    @property
    def title(self) -> str:
        return _TITLES[self.name]

    @property
    def _icon(self) -> str:
        return _ICONS[self.name]

    @property
    def _next_steps(self) -> str:
        return _NEXT_STEPS[self.name]


class BookingWorkflow(Workflow):
    def validate(self, fields: dict[str, str]) -> None:
        # Ambiguous or unparseable dates are rejected, never guessed.
        parse_booking_date(fields["date"])
        parse_booking_time(fields["time"])


_TITLES = {
    "booking": "Booking Request",
    "quotation": "Quotation Request",
    "product_quotation": "Product Quotation Request",
    "demo": "Demo Request",
}
_ICONS = {"booking": "📅", "quotation": "📝", "product_quotation": "📝", "demo": "🎯"}
_NEXT_STEPS = {
    "booking": (
        "Thank you for your booking. You'll receive a confirmation shortly and a reminder 24 hours "
        "before your appointment.\nTo make changes, type 'speak to a human'."
    ),
    "quotation": "Our team will review your requirements and send a detailed quotation within 24 hours.",
    "product_quotation": (
        "Our product team will prepare a tailored proposal within 4-6 business hours, including pricing, "
        "implementation timeline and support options."
    ),
    "demo": "Our demo specialist will call you within 2 hours to confirm the date and time of your demo.",
}

BOOKING = BookingWorkflow(
    name="booking",
    command="Book",
    reference_prefix="BK",
    awaiting_stage=Stage.AWAITING_BOOKING_DETAILS,
    confirming_stage=Stage.CONFIRMING_BOOKING,
    field_names=("name", "date", "time", "description"),
    field_labels=("Name", "Date", "Time", "Description"),
    min_fields=4,
    join_tail=True,
    example="Book: John Doe, 25/05/2025, 10:00 AM, Laptop repair",
    missing_message="Please provide your name, date, time, and description.",
    operator_event="NEW_BOOKING",
    item_kind="service",
)

QUOTATION = Workflow(
    name="quotation",
    command="Quote",
    reference_prefix="QT",
    awaiting_stage=Stage.AWAITING_QUOTE_DETAILS,
    confirming_stage=Stage.CONFIRMING_QUOTE,
    field_names=("name", "requirements", "timeline", "budget"),
    field_labels=("Name", "Requirements", "Timeline", "Budget"),
    min_fields=2,
    defaults={"timeline": "Flexible", "budget": "To be discussed"},
    example="Quote: Jane Smith, Office network for 20 users, 2 weeks, $1,500",
    missing_message="Please provide at least your name and your requirements.",
    operator_event="NEW_QUOTATION",
    item_kind="service",
)

PRODUCT_QUOTATION = Workflow(
    name="product_quotation",
    command="ProductQuote",
    reference_prefix="PQ",
    awaiting_stage=Stage.AWAITING_PRODUCT_QUOTE_DETAILS,
    confirming_stage=Stage.CONFIRMING_PRODUCT_QUOTE,
    field_names=("company", "users", "features", "integrations", "timeline", "budget"),
    field_labels=("Company", "Users", "Features", "Integrations", "Timeline", "Budget"),
    min_fields=3,
    defaults={"integrations": "None specified", "timeline": "Flexible", "budget": "To be discussed"},
    example="ProductQuote: ABC Corp, 50 users, CRM + Analytics, ERP integration, 3 months, $10000",
    missing_message="Please provide at least company name, number of users, and required features.",
    operator_event="NEW_PRODUCT_QUOTATION",
    item_kind="product",
    confirm_title="Yes, Submit Quote",
    retry_title="No, Edit Details",
)

DEMO = Workflow(
    name="demo",
    command="Demo",
    reference_prefix="DM",
    awaiting_stage=Stage.AWAITING_DEMO_DETAILS,
    confirming_stage=Stage.CONFIRMING_DEMO,
    field_names=("name", "company", "preferred_time", "users"),
    field_labels=("Name", "Company", "Date/Time", "Users"),
    min_fields=3,
    defaults={"users": "Not specified"},
    example="Demo: John Smith, ABC Corp, Tomorrow 2PM, 50 users",
    missing_message="Please provide at least your name, company, and preferred date/time.",
    operator_event="NEW_DEMO_REQUEST",
    item_kind="product",
    confirm_title="Yes, Schedule Demo",
    retry_title="No, Edit Details",
)

WORKFLOWS: dict[str, Workflow] = {wf.name: wf for wf in (BOOKING, QUOTATION, PRODUCT_QUOTATION, DEMO)}

COMMAND_WORKFLOWS = {
    "book": "booking",
    "quote": "quotation",
    "productquote": "product_quotation",
    "demo": "demo",
}


def workflow_for_stage(stage: Stage) -> Workflow | None:
    for workflow in WORKFLOWS.values():
        if stage in (workflow.awaiting_stage, workflow.confirming_stage):
            return workflow
    return None
