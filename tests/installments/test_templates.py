"""Tests for Jinja2 notification rendering."""

from datetime import date
from decimal import Decimal

import pytest
from jinja2 import UndefinedError

from agents.installments.playbooks import COLLEGE_DIGEST, TemplateEngine, datefmt, money


def _context(**overrides):
    context = {
        "agency_name": "Brisbane Study Agency",
        "agency_contact_email": "office@agency.example",
        "agency_contact_phone": "+61 7 1234 5678",
        "payment_instructions": "BSB 000-000",
        "student_name": "Alex Student",
        "installment_number": 2,
        "amount": Decimal("1234.5"),
        "due_date": date(2025, 3, 12),
    }
    context.update(overrides)
    return context


@pytest.fixture
def templates():
    return TemplateEngine(override_root="")


class TestFilters:
    @pytest.mark.parametrize(
        "amount, expected",
        [(Decimal("1234.5"), "$1,234.50"), (Decimal("0.005"), "$0.01"), (2500, "$2,500.00"), (None, "$0.00")],
    )
    def test_money(self, amount, expected):
        assert money(amount) == expected

    def test_datefmt(self):
        assert datefmt(date(2025, 3, 2)) == "02 Mar 2025"
        assert datefmt(date(2025, 3, 2), "%Y-%m-%d") == "2025-03-02"


class TestRender:
    def test_due_soon_email(self, templates):
        message = templates.render("a-1", "due_soon", "email", _context())

        assert message.template == "due_soon_email.jinja.txt"
        assert message.subject == "Payment reminder: $1,234.50 due 12 Mar 2025"
        assert "Hi Alex Student," in message.body
        assert "Amount due: $1,234.50" in message.body
        assert "BSB 000-000" in message.body

    def test_optional_sections_are_omitted(self, templates):
        message = templates.render(
            "a-1", "due_soon", "email",
            _context(payment_instructions=None, agency_contact_email=None, agency_contact_phone=None),
        )

        assert "How to pay" not in message.body
        assert "Questions?" not in message.body

    def test_sms_has_no_subject(self, templates):
        message = templates.render("a-1", "due_soon", "sms", _context())

        assert message.subject is None
        assert message.body.startswith("Brisbane Study Agency: reminder")

    def test_missing_variable_is_an_error(self, templates):
        context = _context()
        del context["student_name"]

        with pytest.raises(UndefinedError):
            templates.render("a-1", "due_soon", "email", context)

    def test_unknown_kind_is_an_error(self, templates):
        with pytest.raises(FileNotFoundError):
            templates.render("a-1", "welcome", "email", _context())

    def test_digest_lists_installments(self, templates):
        context = {
            "agency_name": "Agency",
            "agency_contact_email": None,
            "college_name": "Harbour College",
            "installment_count": 2,
            "total_amount": Decimal("3000"),
            "installments": [
                {"student_name": "A", "amount": Decimal("1000"), "due_date": date(2025, 3, 1)},
                {"student_name": "B", "amount": Decimal("2000"), "due_date": date(2025, 3, 2)},
            ],
        }

        message = templates.render("a-1", COLLEGE_DIGEST, "email", context)

        assert message.subject == "Overdue student payments for Harbour College (2)"
        assert "- A: $1,000.00 due 01 Mar 2025" in message.body
        assert "- B: $2,000.00 due 02 Mar 2025" in message.body
        assert "$3,000.00" in message.body


class TestAgencyOverrides:
    def test_agency_template_takes_precedence(self, tmp_path):
        agency_dir = tmp_path / "a-1"
        agency_dir.mkdir()
        (agency_dir / "due_soon_sms.jinja.txt").write_text("Custom {{ amount | money }}", encoding="utf-8")
        templates = TemplateEngine(override_root=tmp_path)

        assert templates.render("a-1", "due_soon", "sms", _context()).body == "Custom $1,234.50\n"
        assert templates.render("a-2", "due_soon", "sms", _context()).body.startswith("Brisbane Study Agency")

    def test_override_missing_file_falls_back_to_default(self, tmp_path):
        (tmp_path / "a-1").mkdir()
        templates = TemplateEngine(override_root=tmp_path)

        message = templates.render("a-1", "overdue", "sms", _context())

        assert "now overdue" in message.body

    def test_catalog_pointing_at_missing_file(self):
        templates = TemplateEngine(override_root="", catalog={"due_soon": {"email": {"template": "gone.jinja.txt"}}})

        with pytest.raises(FileNotFoundError):
            templates.render("a-1", "due_soon", "email", _context())
