from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from talent_radar.models import RawListing, Salary
from talent_radar.normalize import (
    TechPatternTable,
    classify_experience,
    classify_work_model,
    normalize_listing,
    parse_posted_date,
    parse_salary,
)

NOW = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)
MIDNIGHT = datetime(2025, 3, 1, tzinfo=timezone.utc)


class SalaryTests(unittest.TestCase):
    def test_range_with_thousands_separators(self) -> None:
        self.assertEqual(parse_salary("3 000 - 5 000 лв"), Salary(3000, 5000, "BGN"))

    def test_single_amount(self) -> None:
        self.assertEqual(parse_salary("€2,500 gross"), Salary(2500, 2500, "EUR"))

    def test_reversed_range_is_ordered(self) -> None:
        self.assertEqual(parse_salary("6000 - 4000 BGN"), Salary(4000, 6000, "BGN"))

    def test_empty_or_textual(self) -> None:
        self.assertTrue(parse_salary("").is_empty)
        self.assertTrue(parse_salary("competitive").is_empty)


class ClassificationTests(unittest.TestCase):
    def test_work_model(self) -> None:
        self.assertEqual(classify_work_model("Hybrid / Sofia"), "hybrid")
        self.assertEqual(classify_work_model("Fully remote"), "remote")
        self.assertEqual(classify_work_model("Офис в София"), "office")
        self.assertEqual(classify_work_model("Sofia"), "unknown")

    def test_experience_from_title(self) -> None:
        self.assertEqual(classify_experience("Senior Java Developer"), "senior")
        self.assertEqual(classify_experience("Junior QA"), "junior")
        self.assertEqual(classify_experience("Tech Lead"), "senior")

    def test_experience_from_years(self) -> None:
        self.assertEqual(classify_experience("Developer", "We need 1-3 years of experience"), "junior")
        self.assertEqual(classify_experience("Developer", "At least 5+ years with Python"), "mid")
        self.assertEqual(classify_experience("Developer", "10 years in fintech"), "senior")

    def test_experience_unknown_without_signal(self) -> None:
        self.assertIsNone(classify_experience("Developer", "Great team and snacks"))


class PostedDateTests(unittest.TestCase):
    def test_relative_dates(self) -> None:
        self.assertEqual(parse_posted_date("today", NOW), MIDNIGHT)
        self.assertEqual(parse_posted_date("вчера", NOW), MIDNIGHT - timedelta(days=1))
        self.assertEqual(parse_posted_date("3 days ago", NOW), MIDNIGHT - timedelta(days=3))

    def test_absolute_date_is_day_first(self) -> None:
        self.assertEqual(parse_posted_date("15.02.2025", NOW), datetime(2025, 2, 15, tzinfo=timezone.utc))

    def test_unparsable_or_future(self) -> None:
        self.assertIsNone(parse_posted_date("", NOW))
        self.assertIsNone(parse_posted_date("unknown", NOW))
        self.assertIsNone(parse_posted_date("15.02.2031", NOW))


class TechPatternTableTests(unittest.TestCase):
    def test_detect_respects_word_boundaries(self) -> None:
        found = TechPatternTable.default().detect("Java and Spring Boot with Docker, not JavaScript")
        self.assertEqual(found, ["java", "spring", "docker", "javascript"])

    def test_existing_hints_come_first_without_duplicates(self) -> None:
        found = TechPatternTable.default().detect("python and django", existing=["Django", " Kotlin "])
        self.assertEqual(found[:2], ["django", "kotlin"])
        self.assertEqual(found.count("django"), 1)
        self.assertIn("python", found)

    def test_extend_is_copy_on_write(self) -> None:
        base = TechPatternTable.default()
        extended = base.extend({"Terraform": r"\bterraform\b"})
        self.assertEqual(extended.version, base.version + 1)
        self.assertIn("terraform", extended.names())
        self.assertNotIn("terraform", base.names())
        self.assertEqual(extended.detect("Terraform on AWS"), ["aws", "terraform"])


class NormalizeListingTests(unittest.TestCase):
    def test_normalize_listing(self) -> None:
        raw = RawListing(
            title="  Senior   Python Developer ",
            company_name=" Acme ",
            detail_url="https://dev.bg/job/1/",
            source_site="dev.bg",
            native_id="1",
            location_text="Sofia",
            work_model_text="Hybrid",
            salary_text="4000 - 6000 BGN",
            posted_date_text="today",
            technology_hints=["Django"],
            full_text="Python, Django, PostgreSQL and Docker.",
        )
        listing = normalize_listing(raw, clock=lambda: NOW)
        self.assertEqual(listing.title, "Senior Python Developer")
        self.assertEqual(listing.company_name, "Acme")
        self.assertEqual(listing.work_model, "hybrid")
        self.assertEqual(listing.experience_level, "senior")
        self.assertEqual(listing.salary, Salary(4000, 6000, "BGN"))
        self.assertEqual(listing.posted_at, MIDNIGHT)
        self.assertEqual(listing.technologies[0], "django")
        self.assertEqual(set(listing.technologies), {"django", "python", "postgresql", "docker"})


if __name__ == "__main__":
    unittest.main()
