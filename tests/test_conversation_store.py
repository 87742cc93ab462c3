"""Tests for the conversation list store."""

import random

from dmsync.client.stores import ApplyOutcome, ConversationStore

from fakes import ME, OTHER, at, delete_event, insert_event, make_conversation, make_message


def _ids(store):
    return [c.id for c in store.conversations]


def _is_sorted(store):
    stamps = [c.last_message_at for c in store.conversations]
    return stamps == sorted(stamps, reverse=True)


class TestConversationStore:

    def test_replace_all_sorts_descending(self, conversations):
        conversations.replace_all([
            make_conversation("a", 1),
            make_conversation("b", 3),
            make_conversation("c", 2),
        ])
        assert _ids(conversations) == ["b", "c", "a"]

    def test_inbound_event_bumps_unread_and_moves_to_top(self, conversations):
        conversations.replace_all([make_conversation("a", 5), make_conversation("b", 1, unread=2)])

        outcome = conversations.apply_event(
            insert_event(make_message("m1", "b", 10, content="Oi")),
            current_user_id=ME,
            open_conversation_id="a",
        )

        assert outcome == ApplyOutcome.APPLIED
        assert _ids(conversations) == ["b", "a"]
        b = conversations.get("b")
        assert b.unread_count == 3
        assert b.last_message_preview == "Oi"
        assert b.last_message_at == at(10)

    def test_inbound_event_for_open_conversation_keeps_unread(self, conversations):
        conversations.replace_all([make_conversation("a", 5)])

        conversations.apply_event(insert_event(make_message("m1", "a", 10)), current_user_id=ME, open_conversation_id="a")

        assert conversations.get("a").unread_count == 0
        assert conversations.get("a").last_message_at == at(10)

    def test_outbound_event_never_bumps_unread(self, conversations):
        conversations.replace_all([make_conversation("a", 5)])

        conversations.apply_event(insert_event(make_message("m1", "a", 10, sender=ME)), current_user_id=ME, open_conversation_id=None)

        assert conversations.get("a").unread_count == 0

    def test_duplicate_event_is_applied_once(self, conversations):
        conversations.replace_all([make_conversation("a", 5)])
        event = insert_event(make_message("m1", "a", 10))

        first = conversations.apply_event(event, current_user_id=ME, open_conversation_id=None)
        second = conversations.apply_event(event, current_user_id=ME, open_conversation_id=None)

        assert first == ApplyOutcome.APPLIED
        assert second == ApplyOutcome.IGNORED
        assert conversations.get("a").unread_count == 1

    def test_older_event_does_not_rewind_preview(self, conversations):
        conversations.replace_all([make_conversation("a", 10, preview="newest")])

        conversations.apply_event(insert_event(make_message("m0", "a", 2, content="stale")), current_user_id=ME, open_conversation_id=None)

        a = conversations.get("a")
        assert a.last_message_preview == "newest"
        assert a.last_message_at == at(10)
        assert a.unread_count == 1

    def test_unknown_conversation_requests_refetch(self, conversations):
        conversations.replace_all([make_conversation("a", 5)])

        outcome = conversations.apply_event(insert_event(make_message("m1", "zzz", 10)), current_user_id=ME, open_conversation_id=None)

        assert outcome == ApplyOutcome.REFETCH
        assert _ids(conversations) == ["a"]

    def test_deleting_latest_message_requests_refetch(self, conversations):
        conversations.replace_all([make_conversation("a", 5, preview="bye")])

        latest = conversations.apply_event(delete_event(make_message("m1", "a", 5)), current_user_id=ME, open_conversation_id=None)
        older = conversations.apply_event(delete_event(make_message("m0", "a", 1)), current_user_id=ME, open_conversation_id=None)

        assert latest == ApplyOutcome.REFETCH
        assert older == ApplyOutcome.IGNORED

    def test_reset_unread(self, conversations):
        conversations.replace_all([make_conversation("a", 5, unread=3)])

        assert conversations.reset_unread("a") is True
        assert conversations.get("a").unread_count == 0
        assert conversations.reset_unread("a") is False

    def test_touch_and_restore(self, conversations):
        conversations.replace_all([make_conversation("a", 1, preview="before"), make_conversation("b", 5)])

        snapshot = conversations.touch("a", "Oi", at(10))
        assert _ids(conversations) == ["a", "b"]

        assert conversations.restore(snapshot) is True
        assert conversations.get("a").last_message_preview == "before"
        assert _ids(conversations) == ["b", "a"]

    def test_restore_skipped_when_newer_event_landed(self, conversations):
        conversations.replace_all([make_conversation("a", 1, preview="before")])
        snapshot = conversations.touch("a", "Oi", at(10))

        conversations.apply_event(insert_event(make_message("m9", "a", 11, content="reply")), current_user_id=ME, open_conversation_id=None)

        assert conversations.restore(snapshot) is False
        assert conversations.get("a").last_message_preview == "reply"

    def test_set_muted(self, conversations):
        conversations.replace_all([make_conversation("a", 1)])

        conversations.set_muted("a", ME, True)

        assert conversations.is_muted("a", ME) is True
        assert conversations.is_muted("a", OTHER) is False

    def test_list_stays_sorted_under_random_events(self):
        rng = random.Random(7)
        store = ConversationStore()
        store.replace_all([make_conversation(f"c{i}", rng.uniform(0, 100)) for i in range(8)])

        for n in range(300):
            cid = f"c{rng.randrange(10)}"
            sender = rng.choice([ME, OTHER])
            msg = make_message(f"m{rng.randrange(120)}", cid, rng.uniform(0, 200), sender=sender)
            event = insert_event(msg) if rng.random() < 0.8 else delete_event(msg)
            store.apply_event(event, current_user_id=ME, open_conversation_id=rng.choice([None, "c1"]))
            assert _is_sorted(store)
            assert all(c.unread_count >= 0 for c in store.conversations)
