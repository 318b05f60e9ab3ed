import unittest
from datetime import datetime, timedelta, timezone

from calsync.filters import passes_filters, rule_passes
from calsync.marker import encode_marker
from calsync.models import EventRecord, FilterRule


def _event(**overrides) -> EventRecord:
    start = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)
    base = EventRecord(
        calendar_id="src",
        uid="e1",
        summary="Team Standup",
        description="Daily sync",
        location="Room 4",
        organizer="Alice",
        attendees=["Alice", "Bob"],
        start=start,
        end=start + timedelta(minutes=30),
    )
    return base.with_updates(**overrides)


class FilterRuleTests(unittest.TestCase):
    def test_substring_case_handling(self) -> None:
        event = _event()
        self.assertTrue(rule_passes(FilterRule("include_title", "standup"), event, "s1"))
        self.assertFalse(rule_passes(FilterRule("include_title", "standup", case_sensitive=True), event, "s1"))
        self.assertFalse(rule_passes(FilterRule("exclude_location", "room"), event, "s1"))

    def test_invalid_regex_fails_the_rule(self) -> None:
        event = _event()
        self.assertFalse(rule_passes(FilterRule("include_title_regex", "(unclosed"), event, "s1"))
        self.assertTrue(rule_passes(FilterRule("include_title_regex", r"^team\s"), event, "s1"))
        self.assertFalse(rule_passes(FilterRule("exclude_notes_regex", "daily"), event, "s1"))

    def test_attendee_rules(self) -> None:
        event = _event()
        self.assertTrue(rule_passes(FilterRule("include_attendee", "bob"), event, "s1"))
        self.assertFalse(rule_passes(FilterRule("exclude_attendee", "bob"), event, "s1"))
        self.assertTrue(rule_passes(FilterRule("attendees_count_above", "1"), event, "s1"))
        self.assertFalse(rule_passes(FilterRule("attendees_count_below", "2"), event, "s1"))

    def test_duration_rules_are_noops_without_inputs(self) -> None:
        event = _event()
        self.assertFalse(rule_passes(FilterRule("duration_longer_than", "45"), event, "s1"))
        self.assertTrue(rule_passes(FilterRule("duration_shorter_than", "45"), event, "s1"))
        self.assertTrue(rule_passes(FilterRule("duration_longer_than", "abc"), event, "s1"))
        self.assertTrue(rule_passes(FilterRule("duration_longer_than", "45"), _event(end=None), "s1"))

    def test_flag_rules(self) -> None:
        free_all_day = _event(all_day=True, busy=False)
        self.assertFalse(rule_passes(FilterRule("exclude_all_day_when_free"), free_all_day, "s1"))
        self.assertTrue(rule_passes(FilterRule("exclude_all_day_when_free"), _event(all_day=True), "s1"))
        self.assertTrue(rule_passes(FilterRule("availability_free"), free_all_day, "s1"))
        self.assertFalse(rule_passes(FilterRule("is_repeating"), _event(), "s1"))
        self.assertTrue(rule_passes(FilterRule("only_accepted"), _event(), "s1"))

    def test_ignore_other_syncs_policies(self) -> None:
        mine = _event(description=encode_marker("s1", "x", "2024-06-03T09:00:00Z"))
        theirs = _event(description=encode_marker("s2", "x", "2024-06-03T09:00:00Z"))
        rule = FilterRule("ignore_other_syncs")
        self.assertTrue(rule_passes(rule, mine, "s1", "other_sync"))
        self.assertFalse(rule_passes(rule, theirs, "s1", "other_sync"))
        self.assertFalse(rule_passes(rule, mine, "s1", "any_owner"))
        self.assertTrue(rule_passes(rule, _event(), "s1", "any_owner"))

    def test_rules_are_a_conjunction(self) -> None:
        event = _event()
        passing = FilterRule("include_title", "Team")
        failing = FilterRule("exclude_location", "Room")
        self.assertTrue(passes_filters(event, [], "s1"))
        self.assertTrue(passes_filters(event, [passing], "s1"))
        self.assertFalse(passes_filters(event, [passing, failing], "s1"))
        self.assertFalse(passes_filters(event, [failing, passing], "s1"))


if __name__ == "__main__":
    unittest.main()
