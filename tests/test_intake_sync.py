"""Tests for intake polling, pause/resume and the background poller."""

import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from frontdesk.context_manager import ContextManager, IntakePoller, TaskState
from frontdesk.schemas.ticket_schema import TicketState

from tests.conftest import NOW, CountingStore, ScriptedGateway, make_message, make_ticket, make_user

WAIT = 5.0


def _recorder(manager):
    calls = []
    manager.subscribe_updates(lambda: calls.append("update"))
    return calls


class TestPollOnce:
    def test_new_sender_creates_user_and_ticket(self, manager, gateway, store):
        calls = _recorder(manager)
        gateway.push([make_message()])

        assert manager.poll_once() == 1

        [ticket] = [t for t in manager.get_awaiting_tickets() if t.id != "T1"]
        user = manager.get_user(ticket.user)
        assert user.email == "new.patient@example.com"
        assert user.display_name == "Luca Bianchi"
        assert ticket.state == TicketState.AWAITING
        assert ticket.booking is None
        assert ticket.last_interaction == datetime(2024, 3, 4, 7, 45)
        assert store.saves == 1
        assert calls == ["update"]

    def test_known_sender_matched_case_insensitively(self, manager, gateway):
        gateway.push([make_message(sender_email="Maria.Rossi@EXAMPLE.com", sender_name="M. R.")])
        manager.poll_once()
        tickets = manager.get_awaiting_tickets()
        assert {t.user for t in tickets} == {"U1"}
        assert len(tickets) == 2
        assert manager.get_user("U1").first_name == "Maria"

    def test_aware_receipt_time_is_queued_as_local_naive(self, manager, gateway):
        received = datetime(2024, 3, 4, 6, 45, tzinfo=timezone.utc)
        gateway.push([make_message(received_at=received)])
        manager.poll_once()

        tickets = manager.get_awaiting_tickets()
        assert len(tickets) == 2
        new = [t for t in tickets if t.id != "T1"][0]
        assert new.last_interaction == received.astimezone().replace(tzinfo=None)
        assert new.last_interaction.tzinfo is None

    def test_two_messages_from_same_new_sender_share_user(self, manager, gateway):
        gateway.push([make_message(body="first"), make_message(body="second")])
        assert manager.poll_once() == 2
        new = [t for t in manager.get_awaiting_tickets() if t.id != "T1"]
        assert len({t.user for t in new}) == 1

    def test_missing_receipt_time_uses_clock(self, manager, gateway):
        gateway.push([make_message(received_at=None)])
        manager.poll_once()
        new = [t for t in manager.get_awaiting_tickets() if t.id != "T1"]
        assert new[0].last_interaction == NOW

    def test_empty_polls_do_nothing(self, manager, gateway, store):
        calls = _recorder(manager)
        assert manager.poll_once() == 0
        assert manager.poll_once() == 0
        assert gateway.calls == 2
        assert calls == []
        assert store.loads == 1
        assert store.saves == 0

    def test_intake_error_reported_and_recoverable(self, manager, gateway, intake_error):
        intake_errors, storage_errors = [], []
        manager.subscribe_intake_errors(intake_errors.append)
        manager.subscribe_storage_errors(storage_errors.append)
        gateway.push(intake_error)
        gateway.push([make_message()])

        assert manager.poll_once() == 0
        assert manager.poll_once() == 1
        assert intake_errors == [intake_error]
        assert storage_errors == []

    def test_storage_failure_during_merge(self, manager, gateway, store):
        errors = []
        manager.subscribe_storage_errors(errors.append)
        store.fail_saves = True
        gateway.push([make_message()])

        assert manager.poll_once() == 0
        assert [t.id for t in manager.get_awaiting_tickets()] == ["T1"]
        assert len(errors) == 1
        assert manager.task_state == TaskState.IDLE

        gateway.push([make_message()])
        assert manager.poll_once() == 0
        assert len(errors) == 1


class TestDeduplication:
    def _manager(self, store, gateway, scheduling, dedupe):
        ctx = ContextManager(
            store, gateway, replace(scheduling, deduplicate_intake=dedupe),
            clock=lambda: NOW, run_in_background=False,
        )
        ctx.load_data()
        return ctx

    def test_duplicates_kept_by_default(self, store, gateway, scheduling):
        ctx = self._manager(store, gateway, scheduling, dedupe=False)
        gateway.push([make_message(sender_email="maria.rossi@example.com", body="I need an appointment")])
        assert ctx.poll_once() == 1
        assert len(ctx.get_awaiting_tickets()) == 2

    def test_duplicates_dropped_when_enabled(self, store, gateway, scheduling):
        ctx = self._manager(store, gateway, scheduling, dedupe=True)
        gateway.push([
            make_message(sender_email="maria.rossi@example.com", body=" I need an appointment "),
            make_message(sender_email="maria.rossi@example.com", body="Something else"),
            make_message(sender_email="maria.rossi@example.com", body="Something else"),
        ])
        assert ctx.poll_once() == 1
        assert sorted(t.message for t in ctx.get_awaiting_tickets()) == [
            "I need an appointment", "Something else",
        ]


class TestPauseResume:
    def test_no_poll_while_paused(self, manager, gateway):
        manager.stop_task()
        gateway.push([make_message()])
        assert manager.poll_once() == 0
        assert gateway.calls == 0

    def test_in_flight_poll_held_back_until_start(self, manager, store, scheduling):
        calls = _recorder(manager)

        class PausingGateway(ScriptedGateway):
            def poll(self):
                manager.stop_task()  # pause lands while the poll is in flight
                return super().poll()

        manager._gateway = PausingGateway([[make_message()]])
        assert manager.poll_once() == 0
        assert [t.id for t in manager.get_awaiting_tickets()] == ["T1"]
        assert calls == []

        manager.start_task()
        assert len(manager.get_awaiting_tickets()) == 2
        assert calls == ["update"]

    def test_mutation_during_pause_is_never_clobbered(self, manager):
        class PausingGateway(ScriptedGateway):
            def poll(self):
                manager.stop_task()
                return super().poll()

        manager._gateway = PausingGateway(
            [[make_message(sender_email="maria.rossi@example.com", body="Follow-up")]]
        )
        manager.poll_once()

        ticket = manager.get_ticket("T1")
        ticket.booking = datetime(2024, 3, 4, 11, 0)
        ticket.message = "Edited at the desk"
        manager.set_ticket(ticket)

        manager.start_task()

        edited = manager.get_ticket("T1")
        assert edited.message == "Edited at the desk"
        assert edited.state == TicketState.SCHEDULED
        assert [t.message for t in manager.get_awaiting_tickets()] == ["Follow-up"]

    def test_selection_holds_back_merges(self, manager, gateway):
        manager.start_task()
        manager.select_ticket("T1")
        gateway.push([make_message()])
        assert manager.poll_once() == 0
        assert gateway.calls == 0
        manager.reload()
        assert manager.poll_once() == 1


    def test_close_merges_held_back_messages(self, manager):
        class PausingGateway(ScriptedGateway):
            def poll(self):
                manager.stop_task()
                return super().poll()

        calls = _recorder(manager)
        manager._gateway = PausingGateway([[make_message()]])
        manager.poll_once()
        assert len(manager.get_awaiting_tickets()) == 1

        manager.close()

        assert len(manager.get_awaiting_tickets()) == 2
        assert calls == ["update"]

    def test_close_without_held_back_messages_does_not_save(self, manager, store):
        manager.stop_task()
        manager.close()
        assert store.saves == 0


class TestIntakePoller:
    def test_runs_cycle_until_stopped(self):
        ran = threading.Event()
        poller = IntakePoller(ran.set, interval_seconds=3600)
        poller.start()
        assert ran.wait(WAIT)
        assert poller.is_alive()
        poller.stop()
        assert not poller.is_alive()

    def test_start_revives_thread_whose_stop_timed_out(self):
        entered = threading.Event()
        release = threading.Event()
        second = threading.Event()
        count = {"n": 0}

        def cycle():
            count["n"] += 1
            if count["n"] == 1:
                entered.set()
                release.wait(WAIT)
            else:
                second.set()

        poller = IntakePoller(cycle, interval_seconds=3600)
        poller.start()
        assert entered.wait(WAIT)
        try:
            poller.stop(join_timeout_seconds=0.05)
            assert poller.is_alive()

            poller.start()
            release.set()

            assert second.wait(WAIT)
            assert poller.is_alive()
        finally:
            release.set()
            poller.stop()
        assert not poller.is_alive()

    def test_cycle_exception_does_not_kill_thread(self):
        count = {"n": 0}
        second = threading.Event()

        def cycle():
            count["n"] += 1
            if count["n"] == 1:
                raise RuntimeError("boom")
            second.set()

        poller = IntakePoller(cycle, interval_seconds=0.01)
        poller.start()
        try:
            assert second.wait(WAIT)
        finally:
            poller.stop()


class TestBackgroundTask:
    @pytest.fixture
    def background(self, scheduling):
        store = CountingStore(users=[make_user()], tickets=[make_ticket()])
        gateway = ScriptedGateway()
        ctx = ContextManager(
            store, gateway, replace(scheduling, poll_interval_seconds=0.02), clock=lambda: NOW
        )
        ctx.load_data()
        yield ctx, gateway
        ctx.close()

    def test_start_task_polls_in_background(self, background):
        ctx, gateway = background
        updated = threading.Event()
        ctx.subscribe_updates(updated.set)
        gateway.push([make_message()])

        ctx.start_task()

        assert updated.wait(WAIT)
        assert len(ctx.get_awaiting_tickets()) == 2

    def test_intake_error_does_not_stop_loop(self, background, intake_error):
        ctx, gateway = background
        updated = threading.Event()
        errors = []
        ctx.subscribe_updates(updated.set)
        ctx.subscribe_intake_errors(errors.append)
        gateway.push(intake_error)
        gateway.push([make_message()])

        ctx.start_task()

        assert updated.wait(WAIT)
        assert errors == [intake_error]
        assert ctx.task_state == TaskState.RUNNING

    def test_close_stops_thread(self, background):
        ctx, gateway = background
        ctx.start_task()
        assert gateway.polled.wait(WAIT)
        ctx.close()
        assert not ctx._poller.is_alive()

    def test_paused_loop_does_not_poll(self, background):
        ctx, gateway = background
        ctx.start_task()
        assert gateway.polled.wait(WAIT)
        ctx.stop_task()
        # A poll already past the state check may still finish.
        gateway.polled.wait(0.2)
        gateway.polled.clear()
        assert not gateway.polled.wait(0.2)
        assert ctx.task_state == TaskState.PAUSED
