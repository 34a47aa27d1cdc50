import json
import logging
import threading

import pytest
import pytest_asyncio

import schemas
from fakes import T0, FakeFeedClient, FakeWebSocket, ThreadLog, make_boost, make_detail, make_pair
from hunter import BoostHunter
from pin_orders import PinOrderService


@pytest_asyncio.fixture
async def listener(broadcaster):
    websocket = FakeWebSocket()
    await broadcaster.connect(websocket)
    return websocket


def make_hunter(settings, token_store, broadcaster, clock, boosts, details=None):
    feed = FakeFeedClient(boosts=boosts, details=details or {})
    return BoostHunter(settings, feed, token_store, broadcaster, clock=clock), feed


def events(websocket):
    return [json.loads(message) for message in websocket.sent]


class TestHunterTick:
    @pytest.mark.asyncio
    async def test_new_token_inserted_and_announced(self, settings, token_store, broadcaster, clock, listener):
        hunter, _ = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105, amount=5)],
            details={"Axxxxpump": make_detail()},
        )

        await hunter.tick()

        token = token_store.get("Axxxxpump")
        assert token.total_amount == 105
        assert token.date_added == T0
        assert token.boosted == T0

        sent = events(listener)
        assert len(sent) == 1
        assert sent[0]["type"] == "NEW_TOKEN"
        assert sent[0]["token"]["tokenAddress"] == "Axxxxpump"
        assert sent[0]["token"]["totalAmount"] == 105
        assert not hunter.first_run

    @pytest.mark.asyncio
    async def test_unchanged_total_is_skipped(self, settings, token_store, broadcaster, clock, listener):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105)],
            details={"Axxxxpump": make_detail()},
        )
        await hunter.tick()
        clock.advance(5000)

        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]
        assert len(listener.sent) == 1
        assert token_store.get("Axxxxpump").boosted == T0

    @pytest.mark.asyncio
    async def test_changed_total_is_an_update(self, settings, token_store, broadcaster, clock, listener):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105)],
            details={"Axxxxpump": make_detail()},
        )
        await hunter.tick()
        clock.advance(5000)
        feed.boosts = [make_boost(total_amount=115, amount=10)]

        await hunter.tick()

        token = token_store.get("Axxxxpump")
        assert token.total_amount == 115
        assert token.date_added == T0
        assert token.boosted == T0 + 5000
        assert [event["type"] for event in events(listener)] == ["NEW_TOKEN", "update"]

    @pytest.mark.asyncio
    async def test_pinned_token_is_not_refetched(
        self, settings, session_factory, token_store, broadcaster, clock, payment_client, listener
    ):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105)],
            details={"Axxxxpump": make_detail()},
        )
        await hunter.tick()

        pins = PinOrderService(settings, session_factory, token_store, payment_client, broadcaster, clock=clock)
        created = pins.create("Axxxxpump", 1, 0.5)
        payment_client.balances[created.payment_address] = 0.5
        await pins.poll_once()
        assert token_store.get("Axxxxpump").total_amount == 106

        for _ in range(3):
            clock.advance(5000)
            await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]
        assert [event["type"] for event in events(listener)] == ["NEW_TOKEN", "PIN_UPDATE"]

        feed.boosts = [make_boost(total_amount=110, amount=5)]
        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump", "Axxxxpump"]
        assert token_store.get("Axxxxpump").total_amount == 110
        assert events(listener)[-1]["type"] == "update"

    @pytest.mark.asyncio
    async def test_lower_feed_total_is_ignored(self, settings, token_store, broadcaster, clock, listener):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105)],
            details={"Axxxxpump": make_detail()},
        )
        await hunter.tick()
        feed.boosts = [make_boost(total_amount=90)]

        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]
        assert token_store.get("Axxxxpump").total_amount == 105
        assert len(listener.sent) == 1

    @pytest.mark.asyncio
    async def test_store_calls_run_off_the_event_loop(self, settings, token_store, broadcaster, clock, monkeypatch):
        hunter, _ = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(token_address="Axxxxpump"), make_boost(token_address="Bxxxxpump")],
            details={"Axxxxpump": make_detail(), "Bxxxxpump": make_detail()},
        )
        log = ThreadLog()
        monkeypatch.setattr(token_store, "get_boost_amounts", log.wrap(token_store.get_boost_amounts))
        monkeypatch.setattr(token_store, "upsert", log.wrap(token_store.upsert))

        await hunter.tick()

        assert len(log.threads) == 4
        assert threading.get_ident() not in log.threads
        assert token_store.get("Bxxxxpump") is not None

    @pytest.mark.asyncio
    async def test_duplicates_keep_highest_total(self, settings, token_store, broadcaster, clock):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=50), make_boost(total_amount=80), make_boost(total_amount=60)],
            details={"Axxxxpump": make_detail()},
        )

        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]
        assert token_store.get("Axxxxpump").total_amount == 80

    @pytest.mark.asyncio
    async def test_untracked_chain_and_denied_suffix(self, settings, token_store, broadcaster, clock):
        settings.denied_address_suffixes = ["moon"]
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[
                make_boost(token_address="EthToken", chain_id="ethereum"),
                make_boost(token_address="Bxxxxmoon"),
                make_boost(token_address="Cxxxxpump"),
            ],
            details={"Cxxxxpump": make_detail()},
        )

        await hunter.tick()

        assert feed.detail_calls == ["Cxxxxpump"]
        assert token_store.get("EthToken") is None
        assert token_store.get("Bxxxxmoon") is None
        assert token_store.get("Cxxxxpump") is not None

    @pytest.mark.asyncio
    async def test_allowed_suffixes(self, settings, token_store, broadcaster, clock):
        settings.allowed_address_suffixes = ["pump"]
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(token_address="Axxxxpump"), make_boost(token_address="Bxxxxbonk")],
            details={"Axxxxpump": make_detail()},
        )

        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]

    @pytest.mark.asyncio
    async def test_token_without_tracked_pair_is_skipped(self, settings, token_store, broadcaster, clock, listener):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost()],
            details={"Axxxxpump": make_detail(make_pair(dex_id="orca"))},
        )

        await hunter.tick()

        assert feed.detail_calls == ["Axxxxpump"]
        assert token_store.get("Axxxxpump") is None
        assert listener.sent == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, settings, token_store, broadcaster, clock, listener):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(token_address="Axxxxpump"), make_boost(token_address="Bxxxxpump")],
            details={"Axxxxpump": make_detail(), "Bxxxxpump": make_detail()},
        )
        feed.failing.add("Axxxxpump")

        await hunter.tick()

        assert token_store.get("Axxxxpump") is None
        assert token_store.get("Bxxxxpump") is not None
        assert [event["token"]["tokenAddress"] for event in events(listener)] == ["Bxxxxpump"]

    @pytest.mark.asyncio
    async def test_feed_outage_leaves_store_alone(self, settings, token_store, broadcaster, clock, caplog):
        hunter, feed = make_hunter(settings, token_store, broadcaster, clock, boosts=None)

        with caplog.at_level(logging.INFO, logger="hunter"):
            await hunter.tick()

        assert "No new token boosts received." in caplog.text
        assert feed.detail_calls == []
        assert token_store.list_all() == []

    @pytest.mark.asyncio
    async def test_missing_detail_is_skipped(self, settings, token_store, broadcaster, clock):
        hunter, _ = make_hunter(settings, token_store, broadcaster, clock, boosts=[make_boost()], details={})

        await hunter.tick()

        assert token_store.get("Axxxxpump") is None


class TestNotableLog:
    @pytest.mark.asyncio
    async def test_first_tick_is_quiet(self, settings, token_store, broadcaster, clock, caplog):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[make_boost(total_amount=105)],
            details={"Axxxxpump": make_detail()},
        )

        with caplog.at_level(logging.INFO, logger="hunter"):
            await hunter.tick()
        assert "[ Boost Information ]" not in caplog.text

        feed.boosts = [make_boost(total_amount=600, amount=495)]
        with caplog.at_level(logging.INFO, logger="hunter"):
            await hunter.tick()
        assert "[ Boost Information ]" in caplog.text
        assert "🔥 Boost Amount: 600" in caplog.text
        assert "🚀 Pumpfun token: Yes" in caplog.text

    @pytest.mark.asyncio
    async def test_small_boosts_are_not_logged(self, settings, token_store, broadcaster, clock, caplog):
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[], details={"Axxxxpump": make_detail()},
        )
        await hunter.tick()
        feed.boosts = [make_boost(total_amount=5, amount=5)]

        with caplog.at_level(logging.INFO, logger="hunter"):
            await hunter.tick()

        assert token_store.get("Axxxxpump").total_amount == 5
        assert "[ Boost Information ]" not in caplog.text

    @pytest.mark.asyncio
    async def test_rug_risks_are_listed(self, settings, token_store, broadcaster, clock, caplog):
        settings.rug_check_enabled = True
        hunter, feed = make_hunter(
            settings, token_store, broadcaster, clock,
            boosts=[], details={"Axxxxpump": make_detail()},
        )
        feed.rug_reports["Axxxxpump"] = schemas.RugReport.model_validate({
            "risks": [{"name": "Mutable metadata", "description": "Owner can change metadata", "level": "warn"}],
        })
        await hunter.tick()
        feed.boosts = [make_boost(total_amount=105)]

        with caplog.at_level(logging.INFO, logger="hunter"):
            await hunter.tick()

        assert "[ Rugcheck Result   ]" in caplog.text
        assert "🟡 Mutable metadata: Owner can change metadata" in caplog.text
