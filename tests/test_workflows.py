from datetime import date, time

import pytest

from techrehub.services.errors import ValidationError
from techrehub.services.state_machine import Stage
from techrehub.services.workflows import (
    BOOKING,
    DEMO,
    PRODUCT_QUOTATION,
    QUOTATION,
    classify_confirmation,
    match_command,
    parse_booking_date,
    parse_booking_time,
    workflow_for_stage,
)


class TestClassifyConfirmation:
    @pytest.mark.parametrize("text", ["yes", "Yes", "YES!", "y", "yeah", "confirm", "ok", "Yes, Confirm"])
    def test_affirmative(self, text):
        assert classify_confirmation(text) == "yes"

    @pytest.mark.parametrize("text", ["no", "No.", "nope", "retry", "wrong", "No, Edit Details"])
    def test_negative(self, text):
        assert classify_confirmation(text) == "no"

    @pytest.mark.parametrize("text", ["yes but change the time", "maybe", "", "what?"])
    def test_unknown(self, text):
        assert classify_confirmation(text) == "unknown"


class TestDateTimeParsing:
    def test_day_first_date(self):
        assert parse_booking_date("25/05/2025") == date(2025, 5, 25)

    def test_iso_date(self):
        assert parse_booking_date("2025-05-25") == date(2025, 5, 25)

    @pytest.mark.parametrize("value", ["31/02/2025", "tomorrow", "05/25/2025", ""])
    def test_invalid_date_is_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            parse_booking_date(value)
        assert exc_info.value.expected_format == "DD/MM/YYYY"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10:00 AM", time(10, 0)),
            ("10:00am", time(10, 0)),
            ("2 PM", time(14, 0)),
            ("14:30", time(14, 30)),
        ],
    )
    def test_valid_times(self, value, expected):
        assert parse_booking_time(value) == expected

    @pytest.mark.parametrize("value", ["25:00", "noon-ish", "13:00 PM"])
    def test_invalid_time_is_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_booking_time(value)


class TestMatchCommand:
    def test_book_prefix(self):
        assert match_command("Book: John, 25/05/2025, 10:00 AM, repair") == "booking"

    def test_product_quote_prefix_wins_over_quote(self):
        assert match_command("ProductQuote: ABC, 5, CRM") == "product_quotation"

    def test_case_insensitive(self):
        assert match_command("  demo : Jane, Acme, Friday") == "demo"

    def test_no_prefix(self):
        assert match_command("I want to book a repair") is None


class TestBookingWorkflow:
    def test_round_trip_fields(self):
        fields = BOOKING.parse("Book: John Doe, 25/05/2025, 10:00 AM, Laptop repair")
        assert fields == {
            "name": "John Doe",
            "date": "25/05/2025",
            "time": "10:00 AM",
            "description": "Laptop repair",
        }

    def test_without_prefix(self):
        fields = BOOKING.parse("John Doe, 25/05/2025, 10:00 AM, Laptop repair")
        assert fields["name"] == "John Doe"

    def test_extra_commas_join_into_description(self):
        fields = BOOKING.parse("Book: John, 25/05/2025, 10:00 AM, Screen cracked, keyboard sticky")
        assert fields["description"] == "Screen cracked, keyboard sticky"

    @pytest.mark.parametrize(
        "text",
        [
            "Book: John Doe, 25/05/2025, 10:00 AM",
            "Book: John Doe",
            "Book:",
            "John Doe 25/05/2025 10:00 AM Laptop repair",
        ],
    )
    def test_fewer_than_four_fields_is_rejected(self, text):
        with pytest.raises(ValidationError) as exc_info:
            BOOKING.parse(text)
        assert exc_info.value.expected_format == BOOKING.format_hint

    def test_empty_middle_field_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BOOKING.parse("Book: John, , 10:00 AM, repair, extra")
        assert "date" in exc_info.value.message.lower()

    def test_bad_date_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BOOKING.parse("Book: John, 2025/25/05, 10:00 AM, repair")
        assert "not a valid date" in exc_info.value.message

    def test_summary_asks_for_confirmation(self):
        fields = BOOKING.parse("Book: John Doe, 25/05/2025, 10:00 AM, Laptop repair")
        summary = BOOKING.summary(fields)
        assert "Name: John Doe" in summary
        assert summary.endswith("Is this information correct? (Yes/No)")

    def test_reference_format(self):
        reference = BOOKING.new_reference()
        assert reference.startswith("BK")
        assert len(reference) == 10


class TestOtherWorkflows:
    def test_quotation_defaults(self):
        fields = QUOTATION.parse("Quote: Jane Smith, Office network for 20 users")
        assert fields["timeline"] == "Flexible"
        assert fields["budget"] == "To be discussed"

    def test_quotation_needs_two_fields(self):
        with pytest.raises(ValidationError):
            QUOTATION.parse("Quote: Jane Smith")

    def test_product_quotation_defaults(self):
        fields = PRODUCT_QUOTATION.parse("ProductQuote: ABC Corp, 50 users, CRM + Analytics")
        assert fields == {
            "company": "ABC Corp",
            "users": "50 users",
            "features": "CRM + Analytics",
            "integrations": "None specified",
            "timeline": "Flexible",
            "budget": "To be discussed",
        }

    def test_demo_keeps_free_text_time(self):
        fields = DEMO.parse("Demo: John Smith, ABC Corp, Tomorrow 2PM")
        assert fields["preferred_time"] == "Tomorrow 2PM"
        assert fields["users"] == "Not specified"

    def test_instructions_mention_format_and_item(self, catalog):
        text = DEMO.instructions(catalog.get_product("analytics-dashboard"))
        assert "Analytics Dashboard" in text
        assert "Demo: [Name], [Company], [Date/Time], [Users]" in text

    def test_workflow_for_stage(self):
        assert workflow_for_stage(Stage.CONFIRMING_PRODUCT_QUOTE) is PRODUCT_QUOTATION
        assert workflow_for_stage(Stage.AWAITING_DEMO_DETAILS) is DEMO
        assert workflow_for_stage(Stage.INITIAL) is None

    def test_build_request(self):
        fields = QUOTATION.parse("Quote: Jane, Website")
        request = QUOTATION.build_request(
            reference="QT12345678",
            user_id="263771234567",
            platform="whatsapp",
            fields=fields,
            item_id="network-setup",
        )
        assert request.kind == "quotation"
        assert request.fields["requirements"] == "Website"
        assert QUOTATION.operator_payload(request)["reference"] == "QT12345678"
