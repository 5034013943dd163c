"""Arbitration and broadcast tests for AuctionCoordinator, using fake sessions."""

import threading

import pytest

from conftest import FakeSession


class TestRecordBid:

    def test_last_write_wins(self, coordinator, make_session):
        alice = make_session('alice')
        bob = make_session('bob')
        for session, amount in [(alice, '100'), (bob, '50'), (alice, 'abc'), (bob, '75')]:
            coordinator.record_bid(session, amount)
        state = coordinator.snapshot()
        assert state.last_bidder == 'bob'
        assert state.last_amount == '75'

    def test_lower_bid_is_accepted(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        coordinator.record_bid(alice, '1')
        assert coordinator.snapshot().last_amount == '1'

    def test_broadcasts_to_everyone_including_bidder(self, coordinator, make_session):
        alice = make_session('alice')
        bob = make_session('bob')
        coordinator.record_bid(alice, '100')
        assert alice.sent == ['BID|alice|100']
        assert bob.sent == ['BID|alice|100']

    def test_unnamed_session_bids_with_empty_name(self, coordinator, make_session):
        anonymous = make_session()
        coordinator.record_bid(anonymous, '10')
        assert coordinator.snapshot().last_bidder == ''
        assert anonymous.sent == ['BID||10']


class TestRequestFinal:

    def test_rejected_without_bid(self, coordinator, make_session, log_lines):
        alice = make_session('alice')
        assert coordinator.request_final() is False
        assert alice.sent == []
        assert coordinator.snapshot().pending_final is False
        assert any('No bids have been placed' in line for line in log_lines)

    def test_broadcasts_last_bid(self, coordinator, make_session):
        alice = make_session('alice')
        bob = make_session('bob')
        coordinator.record_bid(alice, '100')
        assert coordinator.request_final() is True
        assert bob.sent[-1] == 'FINAL_REQUEST|alice|100'
        assert coordinator.snapshot().pending_final is True

    def test_rejected_while_pending(self, coordinator, make_session, log_lines):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        sent_before = list(alice.sent)
        assert coordinator.request_final() is False
        assert alice.sent == sent_before
        assert any('Already waiting' in line for line in log_lines)


class TestConfirmFinal:

    def test_without_request(self, coordinator, make_session, log_lines):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        assert coordinator.confirm_final(alice, 'alice') is False
        assert alice.sent == ['BID|alice|100']
        assert any('no final was requested' in line for line in log_lines)

    def test_wrong_bidder_keeps_request_pending(self, coordinator, make_session, log_lines):
        alice = make_session('alice')
        bob = make_session('bob')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        assert coordinator.confirm_final(bob, 'bob') is False
        assert coordinator.snapshot().pending_final is True
        assert bob.sent[-1] == 'FINAL_REQUEST|alice|100'
        assert any('last bidder is alice' in line for line in log_lines)

    def test_name_match_is_exact(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        assert coordinator.confirm_final(alice, 'Alice') is False
        assert coordinator.confirm_final(alice, 'alice ') is False
        assert coordinator.snapshot().pending_final is True

    def test_matching_bidder_resolves_request(self, coordinator, make_session):
        alice = make_session('alice')
        bob = make_session('bob')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        assert coordinator.confirm_final(alice, 'alice') is True
        assert bob.sent[-1] == 'BIDMASTER|FINAL_CONFIRMED|alice|100'
        assert coordinator.snapshot().pending_final is False

    def test_other_session_cannot_confirm_for_last_bidder(self, coordinator, make_session, log_lines):
        alice = make_session('alice')
        bob = make_session('bob')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        coordinator.on_client_message(bob, 'FINAL_CONFIRM|alice')
        assert coordinator.snapshot().pending_final is True
        assert bob.sent[-1] == 'FINAL_REQUEST|alice|100'
        assert any('sent by client joined as bob' in line for line in log_lines)
        assert coordinator.confirm_final(alice, 'alice') is True

    def test_unnamed_session_cannot_confirm(self, coordinator, make_session):
        alice = make_session('alice')
        anonymous = make_session()
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        assert coordinator.confirm_final(anonymous, 'alice') is False
        assert coordinator.snapshot().pending_final is True

    def test_second_confirm_is_discarded(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        coordinator.confirm_final(alice, 'alice')
        assert coordinator.confirm_final(alice, 'alice') is False
        assert alice.sent.count('BIDMASTER|FINAL_CONFIRMED|alice|100') == 1

    def test_final_can_be_requested_again_after_confirmation(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.record_bid(alice, '100')
        coordinator.request_final()
        coordinator.confirm_final(alice, 'alice')
        assert coordinator.request_final() is True


class TestClientMessages:

    def test_join_sets_name_and_announces(self, coordinator, make_session):
        session = make_session()
        other = make_session('bob')
        coordinator.on_client_message(session, 'JOIN|alice')
        assert session.name == 'alice'
        assert other.sent == ['BIDMASTER|INFO|alice joined.']

    def test_second_join_is_ignored(self, coordinator, make_session):
        session = make_session()
        coordinator.on_client_message(session, 'JOIN|alice')
        coordinator.on_client_message(session, 'JOIN|mallory')
        assert session.name == 'alice'

    def test_bid_line_is_recorded(self, coordinator, make_session):
        session = make_session('alice')
        coordinator.on_client_message(session, 'BID|alice|100')
        state = coordinator.snapshot()
        assert (state.last_bidder, state.last_amount) == ('alice', '100')

    def test_bid_is_attributed_to_joined_name(self, coordinator, make_session, log_lines):
        session = make_session('alice')
        coordinator.on_client_message(session, 'BID|bob|100')
        assert coordinator.snapshot().last_bidder == 'alice'
        assert any('joined as alice' in line for line in log_lines)

    def test_final_confirm_line_is_routed(self, coordinator, make_session):
        session = make_session('alice')
        coordinator.on_client_message(session, 'BID|alice|100')
        coordinator.request_final()
        coordinator.on_client_message(session, 'FINAL_CONFIRM|alice')
        assert coordinator.snapshot().pending_final is False

    @pytest.mark.parametrize('line', ['HELLO|there', 'BID|alice', 'FINAL_CONFIRM', ''])
    def test_bad_lines_are_logged_and_dropped(self, coordinator, make_session, log_lines, line):
        session = make_session('alice')
        coordinator.on_client_message(session, line)
        state = coordinator.snapshot()
        assert state.last_bidder is None
        assert session.sent == []
        assert session.alive
        assert any(('Unknown message' in entry or 'Malformed message' in entry) for entry in log_lines)

    def test_lines_from_closed_session_are_ignored(self, coordinator, make_session):
        session = make_session('alice')
        session.close()
        coordinator.on_client_message(session, 'BID|alice|100')
        assert coordinator.snapshot().last_bidder is None


class TestRoster:

    def test_broadcast_reaches_only_registered_sessions(self, coordinator, make_session):
        alice = make_session('alice')
        stranger = FakeSession(coordinator, 'stranger')
        coordinator.broadcast('BIDMASTER|INFO|hello')
        assert alice.sent == ['BIDMASTER|INFO|hello']
        assert stranger.sent == []

    def test_failing_session_does_not_stop_broadcast(self, coordinator, make_session):
        first = make_session('first')
        broken = make_session('broken', fail_sends=True)
        last = make_session('last')
        coordinator.broadcast('START|Vase')
        assert first.sent == ['START|Vase']
        assert last.sent == ['START|Vase']
        assert broken not in coordinator.roster()

    def test_session_leaving_during_broadcast(self, coordinator, make_session):
        leaver = make_session('leaver')
        stayer = make_session('stayer')

        def send_and_leave(line):
            leaver.sent.append(line)
            stayer.close()
            return True
        leaver.send = send_and_leave

        coordinator.broadcast('START|Vase')
        assert leaver.sent == ['START|Vase']
        assert coordinator.roster() == [leaver]

    def test_unregister_is_idempotent(self, coordinator, make_session):
        alice = make_session('alice')
        bob = make_session('bob')
        assert coordinator.unregister_session(alice) is True
        assert coordinator.unregister_session(alice) is False
        assert coordinator.roster() == [bob]

    def test_register_twice_keeps_one_entry(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.register_session(alice)
        assert coordinator.roster() == [alice]

    def test_concurrent_bids_keep_state_consistent(self, coordinator, make_session):
        sessions = [make_session(f"bidder-{i}") for i in range(8)]

        def place_bids(session):
            for amount in range(50):
                coordinator.record_bid(session, str(amount))

        threads = [threading.Thread(target=place_bids, args=(session,)) for session in sessions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # every bidder saw the same broadcast order
        first = sessions[0].sent
        assert len(first) == 8 * 50
        assert all(session.sent == first for session in sessions)
        last_bidder, last_amount = first[-1].split('|')[1:]
        state = coordinator.snapshot()
        assert (state.last_bidder, state.last_amount) == (last_bidder, last_amount)


class TestEndAuction:

    def test_end_with_three_sessions(self, coordinator, make_session):
        sessions = [make_session(name) for name in ('alice', 'bob', 'carol')]
        coordinator.record_bid(sessions[0], '100')
        coordinator.request_final()
        coordinator.end_auction()
        for session in sessions:
            assert session.sent[-1] == 'END'
            assert not session.alive
        assert coordinator.roster() == []
        state = coordinator.snapshot()
        assert state.last_bidder is None
        assert state.last_amount is None
        assert state.pending_final is False
        assert state.running is False

    def test_end_twice_is_harmless(self, coordinator, make_session):
        alice = make_session('alice')
        coordinator.end_auction()
        coordinator.end_auction()
        assert alice.sent == ['END']
        assert alice.close_calls == 1
