"""
Test the reward lifecycle: block and wallet events, reorg handling and the
maturity transitions of stakes and zaps.
"""

import asyncio
from typing import Dict

import pytest

from ghostvault.core.config import ConfigStore, settings
from ghostvault.core.exceptions import NodeConnectionError, RPCAuthError, ValidationError
from ghostvault.models.records import (
    BlockReward,
    MessageType,
    PendingStakeStatus,
    PendingZapStatus,
    RewardRecord,
    ServerReadiness,
)
from ghostvault.reconciler.daemon_state import DaemonState
from ghostvault.reconciler.reconciler import Reconciler

from .conftest import COLD_WALLET, FakeInstaller, FakeNode, FakeRemote, stake_tx


BLOCK_HASH = "11" * 32


class FakeCalculator:
    def __init__(self, rewards: Dict[str, int]):
        self.rewards = rewards
        self.calls = 0

    async def get_block_reward(self, txid: str, height: int) -> BlockReward:
        self.calls += 1
        amount = self.rewards.get(txid, 0)
        return BlockReward(total_reward=amount, stake_reward=amount, stake_kernel="GKernel")


def make_reconciler(store, config, node, state, wallet, rewards=None, remote=None) -> Reconciler:
    return Reconciler(
        store,
        config,
        node,
        state,
        remote or FakeRemote(),
        wallet,
        FakeInstaller(),
        calculator=FakeCalculator(rewards or {}),
    )


def ledger_record(timestamp: int, reward: int, all_time: int) -> RewardRecord:
    return RewardRecord(
        height=timestamp,
        timestamp=timestamp,
        block_hash=BLOCK_HASH,
        txid=f"stake{timestamp}",
        reward=reward,
        agvr_reward=0,
        all_time_reward=all_time,
        all_time_agvr_reward=0,
    )


@pytest.mark.asyncio
async def test_new_block_is_idempotent(store, config, node, state, wallet):
    """The same block hash delivered twice only advances state once."""
    node.blocks[BLOCK_HASH] = {"height": 101, "hash": BLOCK_HASH}
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.new_block(BLOCK_HASH)
    await reconciler.new_block(BLOCK_HASH)

    checkpoint = await store.get_checkpoint()
    assert checkpoint.height == 101
    assert checkpoint.block_hash == BLOCK_HASH
    assert node.calls.count("getblock") == 1

    snapshot = await state.snapshot()
    assert snapshot.best_block == 101
    assert snapshot.best_block_hash == BLOCK_HASH
    assert snapshot.cycle == 1


@pytest.mark.asyncio
async def test_new_block_skips_reconciliation_when_not_ready(store, bot_config, node, state, wallet):
    """While the node is syncing the checkpoint moves but zaps stay untouched."""
    await state.set_synced(False)
    node.syncing = True
    node.blocks[BLOCK_HASH] = {"height": 101}
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": 300}
    await store.set_zap(PendingZapStatus(txid="zap1", amount=100, confirmations=10, first_notice=True))
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.new_block(BLOCK_HASH)

    assert (await store.get_checkpoint()).block_hash == BLOCK_HASH
    assert await store.get_zap("zap1") is not None
    assert await store.notifications() == []
    assert "get_transaction" not in node.calls


@pytest.mark.asyncio
async def test_new_remote_block_updates_state(store, config, node, state, wallet):
    """Remote tip is tracked; a repeated hash is ignored."""
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.new_remote_block(BLOCK_HASH, 500)
    await state.set_remote_best_block(1)
    await reconciler.new_remote_block(BLOCK_HASH, 500)

    snapshot = await state.snapshot()
    assert snapshot.remote_best_block_hash == BLOCK_HASH
    assert snapshot.remote_best_block == 1


@pytest.mark.asyncio
async def test_cumulative_totals_accumulate(store, config, node, state, wallet):
    """Each record's all-time total is the sum of every reward up to it."""
    rewards = {"s1": 100, "s2": 250, "s3": 75}
    reconciler = make_reconciler(store, config, node, state, wallet, rewards=rewards)

    for i, txid in enumerate(("s1", "s2", "s3")):
        await reconciler.process_stake_transaction(stake_tx(txid, 1000 + i * 120, 10 + i))

    records = await store.all_rewards()
    assert [r.all_time_reward for r in records] == [100, 350, 425]
    assert records[-1].all_time_reward == sum(r.reward for r in records)


@pytest.mark.asyncio
async def test_stake_replay_does_not_double_count(store, config, node, state, wallet):
    """Processing an already recorded stake returns the stored record."""
    reconciler = make_reconciler(store, config, node, state, wallet, rewards={"s1": 100})
    tx = stake_tx("s1", 1000, 10)

    first = await reconciler.process_stake_transaction(tx)
    second = await reconciler.process_stake_transaction(tx)

    assert first == second
    assert reconciler.calculator.calls == 1
    assert (await store.last_reward()).all_time_reward == 100


@pytest.mark.asyncio
async def test_stake_status_tracks_young_stakes_only(store, config, node, state, wallet):
    """Only stakes with at most 100 confirmations get a pending status."""
    reconciler = make_reconciler(store, config, node, state, wallet, rewards={"young": 1, "old": 1})

    await reconciler.process_stake_transaction(stake_tx("young", 1000, 10, confirmations=100))
    await reconciler.process_stake_transaction(stake_tx("old", 2000, 20, confirmations=101))

    assert await store.get_stake_status("young") is not None
    assert await store.get_stake_status("old") is None


@pytest.mark.asyncio
async def test_orphaned_stake_removed_without_repair(store, config, node, state, wallet):
    """A vanished stake loses its status and ledger entry; later totals stay as they were."""
    await store.set_reward(ledger_record(1000, 100, 100))
    await store.set_reward(ledger_record(2000, 200, 300))
    await store.set_reward(ledger_record(3000, 50, 350))
    await store.set_stake_status(PendingStakeStatus(txid="stake2000", confirmations=5, timestamp=2000))
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.process_rewards_status()

    assert await store.get_stake_status("stake2000") is None
    assert await store.get_reward(2000) is None
    assert (await store.get_reward(3000)).all_time_reward == 350


@pytest.mark.asyncio
async def test_reorged_stake_announces_removal(store, bot_config, node, state, wallet):
    """A stake that turned into an orphan category is dropped and announced."""
    await store.set_reward(ledger_record(1000, 100, 100))
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=5, timestamp=1000, tg_msg_id=77))
    node.transactions["s1"] = {"txid": "s1", "confirmations": 0, "details": [{"category": "orphaned_stake"}]}
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.process_rewards_status()

    assert await store.get_reward(1000) is None
    queued = [n for _, n in await store.notifications()]
    assert len(queued) == 1
    assert queued[0].msg_type == MessageType.STAKE_REMOVAL
    assert queued[0].msg_to_delete == 77


@pytest.mark.asyncio
async def test_matured_stake_flushes_and_clears_status(store, config, node, state, wallet):
    """Past 100 confirmations the status is dropped and rewards move to anon."""
    await store.set_reward(ledger_record(1000, 100, 100))
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=99, timestamp=1000))
    node.transactions["s1"] = stake_tx("s1", 1000, 10, confirmations=101)
    node.balances = {"mine": {"trusted": 5.0, "anon_trusted": 0.0}}
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.process_rewards_status()

    assert await store.get_stake_status("s1") is None
    assert await store.get_reward(1000) is not None
    assert wallet.sent == [("internal-anon", "ghost", "anon")]


@pytest.mark.asyncio
async def test_young_stake_updates_confirmations(store, config, node, state, wallet):
    """Below maturity only the confirmation count changes."""
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=1, timestamp=1000))
    node.transactions["s1"] = stake_tx("s1", 1000, 10, confirmations=40)
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.process_rewards_status()

    assert (await store.get_stake_status("s1")).confirmations == 40
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_zap_maturity_notifies_once(store, bot_config, node, state, wallet):
    """Crossing 225 confirmations removes the zap and queues one staking notice."""
    await store.set_zap(PendingZapStatus(txid="zap1", amount=150_000_000, confirmations=10, first_notice=True))
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": 225}
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.process_zap_status()
    await reconciler.process_zap_status()

    assert await store.get_zap("zap1") is None
    queued = await store.notifications()
    assert len(queued) == 1
    key, note = queued[0]
    assert key == "zap1"
    assert note.header == "👻 Zap Now Staking! 👻"
    assert "1.5 GHOST" in note.msg


@pytest.mark.asyncio
async def test_zap_conflicted_is_dropped(store, config, node, state, wallet):
    """Negative confirmations mean the deposit was double spent."""
    await store.set_zap(PendingZapStatus(txid="zap1", amount=1, confirmations=3))
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": -1}
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.process_zap_status()

    assert await store.get_zap("zap1") is None


@pytest.mark.asyncio
async def test_zap_first_notice_sent_late(store, bot_config, node, state, wallet):
    """A young zap that was never announced gets its new-zap notice."""
    await store.set_zap(PendingZapStatus(txid="zap1", amount=100_000_000, confirmations=1))
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": 12}
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.process_zap_status()

    zap = await store.get_zap("zap1")
    assert zap.confirmations == 12
    assert zap.first_notice is True
    note = await store.get_notification("zap1")
    assert note.header == "👻 New Zap Detected! 👻"


@pytest.mark.asyncio
async def test_wallet_tx_for_other_wallet_ignored(store, config, node, state, wallet):
    """Events from the hot wallet are not ours to account."""
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.new_wallet_tx("s1", "GV_HOT")

    assert "get_transaction" not in node.calls


@pytest.mark.asyncio
async def test_new_stake_event_records_and_announces(store, bot_config, node, state, wallet):
    """A stake event lands in the ledger, gets a pending status and a notification."""
    node.transactions["s1"] = stake_tx("s1", 1_700_000_000, 700_000)
    reconciler = make_reconciler(store, bot_config, node, state, wallet, rewards={"s1": 420_000_000})

    await reconciler.new_wallet_tx("s1", COLD_WALLET)

    record = await store.get_reward(1_700_000_000)
    assert record.reward == 420_000_000
    assert (await store.get_stake_status("s1")).confirmations == 1

    note = await store.get_notification("s1")
    assert note.msg_type == MessageType.STAKE
    assert note.reward_txid == "s1"
    assert '"total_reward": 4.2' in note.code_block


@pytest.mark.asyncio
async def test_incoming_zap_sums_watchonly_receives(store, bot_config, node, state, wallet):
    """Watch-only receive entries are summed into one pending zap."""
    node.transactions["zap1"] = {
        "txid": "zap1",
        "confirmations": 0,
        "details": [
            {"category": "receive", "involvesWatchonly": True, "amount": 1.5},
            {"category": "receive", "involvesWatchonly": True, "amount": 0.5},
            {"category": "send", "amount": -3.0},
        ],
    }
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.new_wallet_tx("zap1", COLD_WALLET)
    await reconciler.new_wallet_tx("zap1", COLD_WALLET)

    zap = await store.get_zap("zap1")
    assert zap.amount == 200_000_000
    assert zap.first_notice is True
    assert len(await store.notifications()) == 1


@pytest.mark.asyncio
async def test_incoming_zap_without_bot(store, config, node, state, wallet):
    """Without a bot the zap is still tracked but never marked as announced."""
    node.transactions["zap1"] = {
        "txid": "zap1",
        "confirmations": 3,
        "details": [{"category": "receive", "involvesWatchonly": True, "amount": 2.0}],
    }
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.new_wallet_tx("zap1", COLD_WALLET)

    zap = await store.get_zap("zap1")
    assert zap.first_notice is False
    assert await store.notifications() == []


@pytest.mark.asyncio
async def test_cleanup_imports_since_checkpoint(store, config, node, state, wallet):
    """Missed trusted stakes are imported and the checkpoint moves to the tip."""
    await store.set_checkpoint(90, "aa" * 32)
    trusted = stake_tx("s1", 1000, 91, confirmations=10)
    untrusted = dict(stake_tx("s2", 1100, 92, confirmations=0), trusted=False)
    node.since_block = {"transactions": [untrusted, trusted]}
    node.chain_info = {"blocks": 101, "bestblockhash": BLOCK_HASH}
    reconciler = make_reconciler(store, config, node, state, wallet, rewards={"s1": 5, "s2": 7})

    await reconciler.cleanup_missing_tx()

    assert [r.txid for r in await store.all_rewards()] == ["s1"]
    checkpoint = await store.get_checkpoint()
    assert checkpoint.height == 101
    assert checkpoint.block_hash == BLOCK_HASH


@pytest.mark.asyncio
async def test_cleanup_without_checkpoint_imports_history(store, config, node, state, wallet):
    """A fresh store pulls in the full wallet history."""
    node.history = [
        stake_tx("s1", 1000, 10, confirmations=500),
        {"txid": "z1", "category": "receive", "confirmations": 4, "amount": 3.0,
         "outputs": [{"involvesWatchonly": True}]},
        {"txid": "gone", "category": "stake", "confirmations": -1},
    ]
    node.transactions["z1"] = {"txid": "z1", "confirmations": 4}
    reconciler = make_reconciler(store, config, node, state, wallet, rewards={"s1": 9})

    await reconciler.cleanup_missing_tx()

    assert [r.txid for r in await store.all_rewards()] == ["s1"]
    assert (await store.get_zap("z1")).amount == 300_000_000
    assert await store.get_checkpoint() is not None


@pytest.mark.asyncio
async def test_reward_payout_below_minimum(store, config, node, state, wallet):
    """Nothing is sent until the anon balance reaches the payout minimum."""
    await config.update("ANON_REWARD_ADDRESS", "GPayout")
    node.balances = {"mine": {"trusted": 0.0, "anon_trusted": 0.05}}
    reconciler = make_reconciler(store, config, node, state, wallet)

    assert await reconciler.reward_payout() == []
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_reward_payout_to_stealth_address(store, bot_config, node, state, wallet):
    """Stealth destinations are paid anon to anon and announced."""
    await bot_config.update("ANON_REWARD_ADDRESS", "SStealth")
    node.address_info["SStealth"] = {"isstealthaddress": True}
    node.balances = {"mine": {"trusted": 0.0, "anon_trusted": 3.0}}
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    txids = await reconciler.reward_payout()

    assert txids == ["send1"]
    assert wallet.sent == [("SStealth", "anon", "anon")]
    note = await store.get_notification("send1")
    assert note.msg_type == MessageType.REWARDS
    assert "ANON address" in note.msg


@pytest.mark.asyncio
async def test_reward_payout_zaps_to_256bit_address(store, config, node, state, wallet):
    """256-bit destinations are zapped into cold staking."""
    await config.update("ANON_REWARD_ADDRESS", "gcs1qcold")
    node.address_info["gcs1qcold"] = {"is256bit": True}
    node.balances = {"mine": {"trusted": 0.0, "anon_trusted": 3.0}}
    reconciler = make_reconciler(store, config, node, state, wallet)

    assert await reconciler.reward_payout() == ["zap1"]
    assert wallet.zapped == [("gcs1qcold", "anon")]


@pytest.mark.asyncio
async def test_bad_chain_alert_after_streak(store, bot_config, node, state, wallet):
    """Consecutive chain mismatches raise one alert, then the streak restarts."""
    await state.update(best_block=100, best_block_hash=BLOCK_HASH)
    reconciler = make_reconciler(store, bot_config, node, state, wallet, remote=FakeRemote("ff" * 32))

    for _ in range(settings.bad_chain_alert_threshold):
        assert await reconciler.check_chain_once() is False

    assert reconciler.bad_chain_count == 0
    assert await state.good_chain() is False
    queued = [n for _, n in await store.notifications()]
    assert len(queued) == 1
    assert queued[0].header == "👻 Bad Chain Detected! 👻"


@pytest.mark.asyncio
async def test_good_chain_resets_streak(store, config, node, state, wallet):
    """A matching hash clears the mismatch counter."""
    await state.update(best_block=100, best_block_hash=BLOCK_HASH)
    reconciler = make_reconciler(store, config, node, state, wallet, remote=FakeRemote(BLOCK_HASH))
    reconciler.bad_chain_count = 3

    assert await reconciler.check_chain_once() is True
    assert reconciler.bad_chain_count == 0


@pytest.mark.asyncio
async def test_check_chain_skipped_while_offline(store, config, node, state, wallet):
    """No comparison is made while the node is offline."""
    await state.set_online(False)
    reconciler = make_reconciler(store, config, node, state, wallet)

    assert await reconciler.check_chain_once() is None


@pytest.mark.asyncio
async def test_daemon_offline_restores_readiness(store, config, node, state, wallet):
    """After the node returns, readiness and the online flag are restored."""
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.handle_daemon_offline()

    assert await state.online() is True
    assert (await store.get_readiness()).daemon_ready is True


@pytest.mark.asyncio
async def test_initialize_requires_wallet(store, gv_config, node, state, wallet):
    """A config without a staking wallet cannot be reconciled."""

    config = ConfigStore(gv_config.model_copy(update={"rpc_wallet": ""}))
    reconciler = make_reconciler(store, config, node, state, wallet)

    with pytest.raises(ValidationError):
        await reconciler.initialize()


@pytest.mark.asyncio
async def test_initialize_seeds_state(store, config, node, wallet):
    """Startup seeds the daemon state from the node and the remote nodes."""

    state = DaemonState()
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.initialize()

    snapshot = await state.snapshot()
    assert snapshot.online is True
    assert snapshot.good_chain is True
    assert snapshot.best_block == 100
    assert snapshot.daemon_version == "0.21.1.9"
    assert await store.get_checkpoint() is not None


@pytest.mark.asyncio
async def test_unreachable_node_keeps_pending_stake(store, config, node, state, wallet):
    """A stake whose lookup fails in transit stays tracked with its ledger entry."""
    await store.set_reward(ledger_record(1000, 100, 100))
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=5, timestamp=1000))
    node.tx_errors["s1"] = NodeConnectionError("Connection reset")
    reconciler = make_reconciler(store, config, node, state, wallet)

    await reconciler.process_rewards_status()

    assert (await store.get_stake_status("s1")).confirmations == 5
    assert await store.get_reward(1000) is not None


@pytest.mark.asyncio
async def test_rejected_credentials_keep_pending_stake(store, config, node, state, wallet):
    """A 401 aborts the pass without touching stakes or the ledger."""
    await store.set_reward(ledger_record(1000, 100, 100))
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=5, timestamp=1000))
    node.tx_errors["s1"] = RPCAuthError("401 Unauthorized")
    reconciler = make_reconciler(store, config, node, state, wallet)

    with pytest.raises(RPCAuthError):
        await reconciler.process_rewards_status()

    assert await store.get_stake_status("s1") is not None
    assert await store.get_reward(1000) is not None


@pytest.mark.asyncio
async def test_rejected_credentials_in_background_request_exit(store, config, node, state, wallet):
    """A detached job failing on a 401 asks the process to exit."""
    exits = []
    reconciler = Reconciler(
        store, config, node, state, FakeRemote(), wallet, FakeInstaller(),
        on_fatal=lambda: exits.append(1),
    )

    async def rejected():
        raise RPCAuthError("401 Unauthorized")

    async def broken():
        raise ValueError("boom")

    await asyncio.gather(
        reconciler.spawn(rejected()), reconciler.spawn(broken()), return_exceptions=True
    )
    await asyncio.sleep(0)

    assert exits == [1]


@pytest.mark.asyncio
async def test_monitor_exits_on_rejected_credentials(store, config, node, state, wallet):
    """The online monitor stops on a 401 rather than reporting the node offline."""

    class RejectingNode(FakeNode):
        async def getblockcount(self):
            raise RPCAuthError("401 Unauthorized")

    reconciler = make_reconciler(store, config, RejectingNode(), state, wallet)

    with pytest.raises(RPCAuthError):
        await reconciler.monitor_daemon_online()

    assert await state.online() is True


@pytest.mark.asyncio
async def test_new_block_respects_maintenance_window(store, bot_config, node, state, wallet):
    """A readiness record marked not ready blocks reconciliation even with healthy flags."""
    await store.set_readiness(ServerReadiness(ready=True, daemon_ready=False, reason="Daemon update in progress"))
    node.blocks[BLOCK_HASH] = {"height": 101}
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": 300}
    await store.set_zap(PendingZapStatus(txid="zap1", amount=100, confirmations=10, first_notice=True))
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.new_block(BLOCK_HASH)

    assert (await store.get_checkpoint()).block_hash == BLOCK_HASH
    assert await store.get_zap("zap1") is not None
    assert await store.notifications() == []


@pytest.mark.asyncio
async def test_new_block_reconciles_when_ready(store, bot_config, node, state, wallet):
    """With the node healthy and no maintenance declared, matured zaps are settled."""
    await store.set_readiness(ServerReadiness(ready=True, daemon_ready=True))
    node.blocks[BLOCK_HASH] = {"height": 101}
    node.transactions["zap1"] = {"txid": "zap1", "confirmations": 300}
    await store.set_zap(PendingZapStatus(txid="zap1", amount=100, confirmations=10, first_notice=True))
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.new_block(BLOCK_HASH)

    assert await store.get_zap("zap1") is None
    assert len(await store.notifications()) == 1


@pytest.mark.asyncio
async def test_two_removals_in_one_pass_both_queued(store, bot_config, node, state, wallet):
    """Stakes reorged out in the same second each get their own removal notice."""
    for timestamp, txid, msg_id in ((1000, "s1", 77), (2000, "s2", 78)):
        await store.set_reward(ledger_record(timestamp, 100, timestamp // 10))
        await store.set_stake_status(
            PendingStakeStatus(txid=txid, confirmations=5, timestamp=timestamp, tg_msg_id=msg_id)
        )
        node.transactions[txid] = {"txid": txid, "confirmations": 0, "details": [{"category": "orphaned_stake"}]}
    reconciler = make_reconciler(store, bot_config, node, state, wallet)

    await reconciler.process_rewards_status()

    queued = [n for _, n in await store.notifications()]
    assert sorted(n.msg_to_delete for n in queued) == [77, 78]
    assert all(n.msg_type == MessageType.STAKE_REMOVAL for n in queued)
