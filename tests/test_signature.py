"""Unit tests for the schedule content signature."""

from datetime import datetime, timedelta

from kickoff.notifications.signature import compute_signature

SEND_AT = datetime(2026, 3, 3, 17, 0)
TEXT = ("Real Madrid", "Barcelona", "ريال مدريد", "برشلونة", "La Liga", "الدوري الإسباني", "2026-03-03 20:00")


class TestComputeSignature:
    def test_deterministic(self):
        assert compute_signature(SEND_AT, ["real_madrid"], *TEXT) == compute_signature(SEND_AT, ["real_madrid"], *TEXT)

    def test_hex_digest(self):
        signature = compute_signature(SEND_AT, ["real_madrid"], *TEXT)
        assert len(signature) == 64
        int(signature, 16)

    def test_audience_order_and_duplicates_ignored(self):
        a = compute_signature(SEND_AT, ["real_madrid", "barcelona"], *TEXT)
        b = compute_signature(SEND_AT, ["barcelona", "real_madrid", "barcelona"], *TEXT)
        assert a == b

    def test_send_time_changes_signature(self):
        a = compute_signature(SEND_AT, ["real_madrid"], *TEXT)
        b = compute_signature(SEND_AT + timedelta(minutes=1), ["real_madrid"], *TEXT)
        assert a != b

    def test_sub_second_change_below_millis_is_ignored(self):
        """Send instants are compared at millisecond precision, like the remote API renders them."""
        a = compute_signature(SEND_AT, ["real_madrid"], *TEXT)
        b = compute_signature(SEND_AT.replace(microsecond=500), ["real_madrid"], *TEXT)
        assert a == b

    def test_audience_membership_changes_signature(self):
        a = compute_signature(SEND_AT, ["real_madrid"], *TEXT)
        b = compute_signature(SEND_AT, ["real_madrid", "barcelona"], *TEXT)
        assert a != b

    def test_text_changes_signature(self):
        a = compute_signature(SEND_AT, ["real_madrid"], *TEXT)
        b = compute_signature(SEND_AT, ["real_madrid"], *TEXT[:-1], "2026-03-03 20:30")
        assert a != b

    def test_text_is_positional(self):
        a = compute_signature(SEND_AT, ["x"], "Home", "Away")
        b = compute_signature(SEND_AT, ["x"], "Away", "Home")
        assert a != b

    def test_separators_inside_text_do_not_collide(self):
        a = compute_signature(SEND_AT, ["x"], "A|B", "C")
        b = compute_signature(SEND_AT, ["x"], "A", "B|C")
        assert a != b

    def test_none_text_part_differs_from_empty(self):
        assert compute_signature(SEND_AT, ["x"], None) != compute_signature(SEND_AT, ["x"], "")
