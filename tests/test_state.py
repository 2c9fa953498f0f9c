"""Tests for sub-account state reconstruction."""

import random

import pytest

from spending_oracle.allowance import calculate_allowance
from spending_oracle.events import Operation, OperationType, OrderKey, Transfer
from spending_oracle.fifo import AcquiredEntry
from spending_oracle.state import ClaimPolicy, build_state, merge_events


ACCOUNT = "0x" + "a" * 40
OTHER_ACCOUNT = "0x" + "f" * 40
POOL = "0x" + "b" * 40
ROUTER = "0x" + "c" * 40
RECIPIENT = "0x" + "d" * 40
USDC = "0x" + "1" * 40
WETH = "0x" + "2" * 40
A_USDC = "0x" + "3" * 40
DAI = "0x" + "4" * 40
COMP = "0x" + "5" * 40
LP = "0x" + "6" * 40

BIG_WINDOW = 10**6


def op(kind, ts, block, tokens_in=(), amounts_in=(), tokens_out=(), amounts_out=(),
       cost=0, target=ROUTER, log=0, account=ACCOUNT):
    return Operation(
        account=account,
        target=target,
        kind=kind,
        tokens_in=tuple(tokens_in),
        amounts_in=tuple(amounts_in),
        tokens_out=tuple(tokens_out),
        amounts_out=tuple(amounts_out),
        spending_cost=cost,
        timestamp=ts,
        order_key=OrderKey(block, log),
    )


def swap(ts, block, token_in, amount_in, token_out, amount_out, cost=None, log=0):
    return op(OperationType.SWAP, ts, block, [token_in], [amount_in], [token_out], [amount_out],
              cost=amount_in if cost is None else cost, log=log)


def transfer(ts, block, token, amount, cost=None, log=0):
    return Transfer(
        account=ACCOUNT,
        token=token,
        recipient=RECIPIENT,
        amount=amount,
        spending_cost=amount if cost is None else cost,
        timestamp=ts,
        order_key=OrderKey(block, log),
    )


def deposit_withdraw_history():
    return [
        swap(500, 1, DAI, 200, USDC, 200),
        op(OperationType.DEPOSIT, 600, 2, [USDC], [200], [A_USDC], [200], cost=200, target=POOL),
        swap(800, 3, DAI, 300, USDC, 300),
        op(OperationType.DEPOSIT, 900, 4, [USDC], [300], [A_USDC], [300], cost=300, target=POOL),
        op(OperationType.WITHDRAW, 1000, 5, [A_USDC], [250], [USDC], [250], target=POOL),
    ]


class TestSwap:
    def test_output_of_unfunded_swap_is_acquired_now(self):
        state = build_state([swap(100, 1, USDC, 1000, WETH, 5)], ACCOUNT, 200, BIG_WINDOW)

        assert state.spending_in_window == 1000
        assert state.acquired_balances == {WETH: 5}
        assert state.acquired_queues[WETH].entries == [AcquiredEntry(5, 100)]

    def test_proportional_split(self):
        events = [
            swap(1000, 1, DAI, 300, USDC, 300),
            swap(2000, 2, USDC, 500, WETH, 250),
        ]
        state = build_state(events, ACCOUNT, 3000, BIG_WINDOW)

        assert state.acquired_queues[WETH].entries == [
            AcquiredEntry(150, 1000),
            AcquiredEntry(100, 2000),
        ]
        assert state.acquired_balances == {WETH: 250}
        assert state.spending_in_window == 800

    @pytest.mark.parametrize(
        "acquired,amount_in,amount_out",
        [(300, 500, 250), (1, 3, 7), (999, 1000, 1), (7, 7, 13), (0, 10, 9), (5, 11, 10**18 + 3)],
    )
    def test_split_conserves_output(self, acquired, amount_in, amount_out):
        events = [swap(2000, 2, USDC, amount_in, WETH, amount_out)]
        if acquired:
            events.append(swap(1000, 1, DAI, acquired, USDC, acquired))
        state = build_state(events, ACCOUNT, 3000, BIG_WINDOW)

        assert state.acquired_queues[WETH].total == amount_out

    def test_output_inherits_oldest_consumed_timestamp(self):
        events = [
            swap(1000, 1, DAI, 10, USDC, 10),
            swap(1500, 2, DAI, 10, USDC, 10),
            swap(2000, 3, USDC, 20, WETH, 4),
        ]
        state = build_state(events, ACCOUNT, 2500, BIG_WINDOW)
        assert state.acquired_queues[WETH].entries == [AcquiredEntry(4, 1000)]


class TestDepositWithdraw:
    def test_withdraw_inherits_original_acquisition(self):
        state = build_state(deposit_withdraw_history(), ACCOUNT, 2000, BIG_WINDOW)

        assert [r.remaining_amount for r in state.deposit_records] == [0, 250]
        assert [r.original_acquisition_timestamp for r in state.deposit_records] == [500, 800]
        assert state.acquired_queues[USDC].entries == [AcquiredEntry(250, 500)]
        assert state.acquired_balances[USDC] == 250

    def test_withdraw_burns_receipt_tokens(self):
        state = build_state(deposit_withdraw_history(), ACCOUNT, 2000, BIG_WINDOW)

        assert state.acquired_queues[A_USDC].entries == [AcquiredEntry(250, 800)]
        assert [r.remaining_output_amount for r in state.deposit_records] == [0, 250]

    def test_withdraw_without_deposit_is_not_acquired(self):
        events = [op(OperationType.WITHDRAW, 100, 1, [A_USDC], [50], [USDC], [50], target=POOL)]
        state = build_state(events, ACCOUNT, 200, BIG_WINDOW)

        assert state.acquired_balances == {}
        assert state.spending_in_window == 0

    def test_round_trip_expires_from_original_time(self):
        # Acquired at 500, so gone once the window passes 500 even though withdrawn at 1000.
        state = build_state(deposit_withdraw_history(), ACCOUNT, 1100, 600)
        assert USDC not in state.acquired_balances

    def test_multi_token_deposit_splits_single_receipt(self):
        events = [
            op(OperationType.DEPOSIT, 100, 1, [USDC, WETH], [100, 3], [LP], [51], cost=103, target=POOL),
            op(OperationType.WITHDRAW, 200, 2, [LP], [26], [USDC], [100], target=POOL),
        ]
        state = build_state(events, ACCOUNT, 300, BIG_WINDOW)

        records = state.deposit_records
        assert [(r.token, r.amount_out) for r in records] == [(USDC, 26), (WETH, 25)]
        assert sum(r.amount_out for r in records) == 51
        assert state.acquired_balances[LP] == 25
        assert state.acquired_balances[USDC] == 100


class TestClaim:
    def _events(self):
        return [
            op(OperationType.DEPOSIT, 1000, 1, [USDC], [100], [A_USDC], [100], cost=100, target=POOL),
            op(OperationType.CLAIM, 2000, 2, [], [], [COMP], [7], target=POOL),
        ]

    def test_deposit_match_policy_does_not_acquire_rewards(self):
        state = build_state(self._events(), ACCOUNT, 3000, BIG_WINDOW)
        assert COMP not in state.acquired_balances

    def test_position_policy_acquires_rewards_from_deposit_time(self):
        state = build_state(
            self._events(), ACCOUNT, 3000, BIG_WINDOW, claim_policy=ClaimPolicy.POSITION
        )
        assert state.acquired_queues[COMP].entries == [AcquiredEntry(7, 1000)]

    def test_position_policy_requires_a_position_at_target(self):
        events = [op(OperationType.CLAIM, 2000, 2, [], [], [COMP], [7], target=POOL)]
        state = build_state(events, ACCOUNT, 3000, BIG_WINDOW, claim_policy=ClaimPolicy.POSITION)
        assert state.acquired_balances == {}

    def test_claim_matching_deposit_token_is_acquired(self):
        events = [
            op(OperationType.DEPOSIT, 1000, 1, [USDC], [100], [A_USDC], [100], cost=100, target=POOL),
            op(OperationType.CLAIM, 2000, 2, [], [], [USDC], [40], target=POOL),
        ]
        state = build_state(events, ACCOUNT, 3000, BIG_WINDOW)
        assert state.acquired_queues[USDC].entries == [AcquiredEntry(40, 1000)]


class TestTransferAndApprove:
    def test_transfer_consumes_acquired_and_charges(self):
        events = [swap(100, 1, DAI, 1000, USDC, 1000), transfer(200, 2, USDC, 400)]
        state = build_state(events, ACCOUNT, 300, BIG_WINDOW)

        assert state.acquired_balances == {USDC: 600}
        assert state.spending_in_window == 1400

    def test_approve_has_no_effect(self):
        events = [op(OperationType.APPROVE, 100, 1, [USDC], [10**30], [], [], cost=50)]
        state = build_state(events, ACCOUNT, 200, BIG_WINDOW)

        assert state.spending_in_window == 0
        assert state.acquired_balances == {}


class TestSpendingWindow:
    def test_window_bounds_are_inclusive(self):
        events = [
            transfer(899, 1, USDC, 1, cost=1),
            transfer(900, 2, USDC, 1, cost=10),
            transfer(1000, 3, USDC, 1, cost=100),
            transfer(1001, 4, USDC, 1, cost=1000),
        ]
        state = build_state(events, ACCOUNT, 1000, 100)
        assert state.spending_in_window == 110

    def test_expired_acquisitions_are_omitted(self):
        state = build_state([swap(0, 1, DAI, 1, WETH, 100)], ACCOUNT, 100, 100)
        assert state.acquired_balances == {}

        state = build_state([swap(0, 1, DAI, 1, WETH, 100)], ACCOUNT, 99, 100)
        assert state.acquired_balances == {WETH: 100}

    def test_expired_entry_is_not_consumed_by_later_swap(self):
        events = [
            swap(0, 1, DAI, 100, USDC, 100),
            swap(500, 2, USDC, 100, WETH, 10),
        ]
        state = build_state(events, ACCOUNT, 600, 300)
        assert state.acquired_queues[WETH].entries == [AcquiredEntry(10, 500)]


class TestReplayProperties:
    def test_idempotence(self):
        events = deposit_withdraw_history()
        first = build_state(events, ACCOUNT, 2000, BIG_WINDOW)
        second = build_state(events, ACCOUNT, 2000, BIG_WINDOW)

        assert first.acquired_balances == second.acquired_balances
        assert calculate_allowance(10**6, 500, first.spending_in_window) == calculate_allowance(
            10**6, 500, second.spending_in_window
        )

    def test_duplicates_do_not_change_output(self):
        events = deposit_withdraw_history()
        with_duplicate = events + [events[2], events[4]]

        assert (
            build_state(with_duplicate, ACCOUNT, 2000, BIG_WINDOW).to_dict()
            == build_state(events, ACCOUNT, 2000, BIG_WINDOW).to_dict()
        )

    def test_input_order_does_not_matter(self):
        events = deposit_withdraw_history()
        shuffled = list(events)
        random.Random(7).shuffle(shuffled)

        assert (
            build_state(shuffled, ACCOUNT, 2000, BIG_WINDOW).to_dict()
            == build_state(events, ACCOUNT, 2000, BIG_WINDOW).to_dict()
        )

    def test_new_events_are_merged_and_deduplicated(self):
        events = deposit_withdraw_history()
        historical, new = events[:4], events[3:]

        assert (
            build_state(historical, ACCOUNT, 2000, BIG_WINDOW, new_events=new).to_dict()
            == build_state(events, ACCOUNT, 2000, BIG_WINDOW).to_dict()
        )

    def test_foreign_events_are_ignored(self):
        foreign = op(OperationType.SWAP, 100, 9, [DAI], [5], [WETH], [5], cost=5, account=OTHER_ACCOUNT)
        state = build_state([foreign], ACCOUNT, 200, BIG_WINDOW)

        assert state.events_replayed == 0
        assert state.spending_in_window == 0

    @pytest.mark.parametrize("seed", range(20))
    def test_non_negativity(self, seed):
        rng = random.Random(seed)
        tokens = [USDC, WETH, DAI, A_USDC]
        kinds = [OperationType.SWAP, OperationType.DEPOSIT, OperationType.WITHDRAW,
                 OperationType.CLAIM, OperationType.APPROVE]
        events = []
        for i in range(60):
            ts = rng.randint(0, 5000)
            if rng.random() < 0.2:
                events.append(transfer(ts, i, rng.choice(tokens), rng.randint(0, 500)))
                continue
            token_in, token_out = rng.sample(tokens, 2)
            events.append(op(
                rng.choice(kinds), ts, i,
                [token_in], [rng.randint(0, 500)],
                [token_out], [rng.randint(0, 500)],
                cost=rng.randint(0, 100),
                target=rng.choice([POOL, ROUTER]),
            ))

        policy = rng.choice(list(ClaimPolicy))
        state = build_state(events, ACCOUNT, 5000, rng.randint(1, 5000), claim_policy=policy)

        assert all(balance >= 0 for balance in state.acquired_balances.values())
        assert all(0 <= r.remaining_amount <= r.amount for r in state.deposit_records)
        for token, balance in state.acquired_balances.items():
            assert balance == state.acquired_queues[token].total
        for queue in state.acquired_queues.values():
            assert all(entry.amount > 0 for entry in queue)


def test_merge_events_first_occurrence_wins():
    original = swap(100, 1, DAI, 1, WETH, 1)
    conflicting = swap(999, 1, DAI, 2, WETH, 2)
    assert merge_events([original], [conflicting]) == [original]
