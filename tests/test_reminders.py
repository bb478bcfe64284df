from datetime import timedelta

from circulation.models import NotificationCategory
from conftest import START


def test_due_soon_notice_goes_to_the_reader(world, clock):
    desk = world.desk
    desk.circulation.borrow("kid", world.copy_id, "lib-a")

    clock.set(START + timedelta(days=14) - timedelta(hours=12))
    summary = desk.reminders.run()

    assert summary == {"due_soon": 1, "overdue": 0, "priorities_updated": 0, "priorities_promoted": 0}
    inbox = desk.notifier.list_for_user("kid")
    assert [(n.title, n.category) for n in inbox] == [("Book Due Soon", NotificationCategory.DUE_SOON)]
    assert inbox[0].message == 'The book "1984" is due tomorrow.'
    assert desk.notifier.list_for_user("parent") == []


def test_overdue_notice(world, clock):
    desk = world.desk
    desk.circulation.borrow("alice", world.copy_id, "lib-a")

    clock.advance(days=20)
    summary = desk.reminders.run()

    assert (summary["due_soon"], summary["overdue"]) == (0, 1)
    notice = desk.notifier.list_for_user("alice")[0]
    assert notice.title == "Book Overdue"
    assert notice.category is NotificationCategory.OVERDUE


def test_loans_far_from_due_are_quiet(world, clock):
    desk = world.desk
    desk.circulation.borrow("alice", world.copy_id, "lib-a")
    clock.advance(days=3)

    assert desk.reminders.run()["due_soon"] == 0
    assert desk.notifier.unread_count("alice") == 0


def test_sweep_refreshes_reservation_priorities(world, clock):
    desk = world.desk
    clock.advance(days=-15)
    desk.reservations.create_reservation("alice", "ed-dune")
    clock.advance(days=15)

    summary = desk.reminders.run()
    assert (summary["priorities_updated"], summary["priorities_promoted"]) == (1, 1)


def test_inbox_read_tracking(world, clock):
    desk = world.desk
    desk.circulation.borrow("alice", world.copy_id, "lib-a")
    clock.advance(days=20)
    desk.reminders.run()
    clock.advance(days=1)
    desk.reminders.run()

    assert desk.notifier.unread_count("alice") == 2
    newest, older = desk.notifier.list_for_user("alice")
    assert desk.notifier.mark_read(newest.id, "alice").is_read
    assert [n.id for n in desk.notifier.list_for_user("alice", unread_only=True)] == [older.id]
    assert desk.notifier.unread_count("alice") == 1
    assert desk.notifier.mark_all_read("alice") == 1
    assert desk.notifier.unread_count("alice") == 0
