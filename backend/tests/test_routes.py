import importlib
import json
import os
import threading
import unittest
from unittest import mock

from web3 import Web3

import backend.config as config_module

from raffle.collaborators import InMemoryPaymentRail, InMemoryVRFCoordinator, PaymentVerifier
from raffle.errors import PaymentNotVerified, PayoutUnconfirmed

ALICE = Web3.to_checksum_address("0x" + "a" * 40)
BOB = Web3.to_checksum_address("0x" + "b" * 40)
CAROL = Web3.to_checksum_address("0x" + "c" * 40)
TX_ALICE = "0x" + "a1" * 32
TX_BOB = "0x" + "b1" * 32


class FakeClock:
    def __init__(self, now: int = 1_700_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeVerifier(PaymentVerifier):
    def __init__(self, payments) -> None:
        self.payments = payments

    def verify(self, player, tx_hash):
        if tx_hash not in self.payments:
            raise PaymentNotVerified(tx_hash, "transaction not found or not mined")
        sender, value = self.payments[tx_hash]
        if sender != player:
            raise PaymentNotVerified(tx_hash, "transaction was sent by another account")
        return value


class RaffleRoutesTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["ENTRANCE_FEE"] = "10"
        os.environ["INTERVAL_SECONDS"] = "60"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        os.environ["ORACLE_API_KEY"] = "test-oracle"
        os.environ.pop("RPC_URL", None)
        config_module.load_settings.cache_clear()

        import backend.db as db_module
        import backend.models as models_module
        import backend.services.ledger_store as ledger_store_module
        import backend.services.raffle as raffle_service_module
        import backend.routes.config as config_route_module
        import backend.routes.raffle as raffle_route_module
        import backend.app as app_module

        importlib.reload(config_module)
        importlib.reload(db_module)
        importlib.reload(models_module)
        importlib.reload(ledger_store_module)
        raffle_service_module = importlib.reload(raffle_service_module)
        importlib.reload(config_route_module)
        importlib.reload(raffle_route_module)
        app_module = importlib.reload(app_module)

        self.clock = FakeClock()
        self.coordinator = InMemoryVRFCoordinator()
        self.rail = InMemoryPaymentRail()
        self.service_module = raffle_service_module
        self.app_module = app_module
        self._start(payment_verifier=None)

    def _start(self, payment_verifier) -> None:
        settings = config_module.load_settings()
        self.service = self.service_module.RaffleService(
            settings.raffle,
            self.coordinator,
            self.rail,
            clock=self.clock,
            payment_verifier=payment_verifier,
        )
        self.app = self.app_module.create_app(service=self.service)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        config_module.load_settings.cache_clear()

    def _oracle_headers(self):
        return {"X-Oracle-Token": "test-oracle"}

    def _enter(self, player: str, payment: int = 10, tx_hash=None):
        body = {"player": player, "payment": payment}
        if tx_hash is not None:
            body["tx_hash"] = tx_hash
        return self.client.post(
            "/raffle/entries",
            data=json.dumps(body),
            content_type="application/json",
        )

    def _fulfill(self, request_id: int, words, headers=None):
        return self.client.post(
            "/raffle/fulfill",
            headers=headers if headers is not None else self._oracle_headers(),
            data=json.dumps({"request_id": request_id, "random_words": words}),
            content_type="application/json",
        )

    def test_initial_status(self) -> None:
        response = self.client.get("/raffle")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["state"], "OPEN")
        self.assertEqual(payload["entrance_fee"], "10")
        self.assertEqual(payload["interval"], 60)
        self.assertEqual(payload["balance"], "0")
        self.assertEqual(payload["player_count"], 0)
        self.assertEqual(payload["last_round_start"], self.clock.now)

    def test_enter_records_player(self) -> None:
        response = self._enter(ALICE)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["position"], 0)

        self._enter(BOB, 15)
        players = self.client.get("/raffle/players").get_json()
        self.assertEqual(players, [ALICE, BOB])
        self.assertEqual(self.client.get("/raffle/players/1").get_json()["player"], BOB)
        self.assertEqual(self.client.get("/raffle/players/5").status_code, 404)
        self.assertEqual(self.client.get("/raffle").get_json()["balance"], "25")

    def test_enter_below_fee_is_rejected(self) -> None:
        response = self._enter(ALICE, 9)
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload["error"], "insufficient_payment")
        self.assertEqual(payload["payment"], 9)
        self.assertEqual(payload["entrance_fee"], 10)
        self.assertEqual(self.client.get("/raffle/players").get_json(), [])

    def test_invalid_entry_payload(self) -> None:
        response = self.client.post(
            "/raffle/entries",
            data=json.dumps({"player": ALICE, "payment": "lots"}),
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_request")

    def test_upkeep_not_needed_reports_snapshot(self) -> None:
        self._enter(ALICE)
        check = self.client.get("/raffle/upkeep").get_json()
        self.assertEqual(check, {"upkeep_needed": False, "perform_data": "0x"})

        response = self.client.post("/raffle/upkeep")
        self.assertEqual(response.status_code, 409)
        payload = response.get_json()
        self.assertEqual(payload["error"], "upkeep_not_needed")
        self.assertEqual(payload["balance"], 10)
        self.assertEqual(payload["player_count"], 1)
        self.assertEqual(payload["state"], "OPEN")

    def test_full_round(self) -> None:
        for player in (ALICE, BOB, CAROL):
            self.assertEqual(self._enter(player).status_code, 201)

        self.clock.now += 60
        self.assertTrue(self.client.get("/raffle/upkeep").get_json()["upkeep_needed"])

        upkeep = self.client.post("/raffle/upkeep")
        self.assertEqual(upkeep.status_code, 202)
        request_id = upkeep.get_json()["request_id"]
        self.assertEqual(upkeep.get_json()["state"], "CALCULATING")
        self.assertEqual(len(self.coordinator.requests), 1)

        self.assertEqual(self._enter(ALICE).status_code, 409)
        self.assertEqual(self.client.post("/raffle/upkeep").status_code, 409)

        response = self._fulfill(request_id, [14])
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["winner"], CAROL)
        self.assertEqual(payload["payout"], "30")
        self.assertEqual(self.rail.balance_of(CAROL), 30)

        status = self.client.get("/raffle").get_json()
        self.assertEqual(status["state"], "OPEN")
        self.assertEqual(status["player_count"], 0)
        self.assertEqual(status["balance"], "0")
        self.assertEqual(status["recent_winner"], CAROL)

        winners = self.client.get("/raffle/winners").get_json()
        self.assertEqual(len(winners), 1)
        self.assertEqual(winners[0]["winner"], CAROL)
        self.assertEqual(winners[0]["payout"], "30")
        self.assertEqual(winners[0]["random_word"], "14")

    def test_failed_transfer_keeps_round_calculating(self) -> None:
        for player in (ALICE, BOB, CAROL):
            self._enter(player)
        self.clock.now += 60
        request_id = self.client.post("/raffle/upkeep").get_json()["request_id"]
        self.rail.rejecting.add(BOB)

        response = self._fulfill(request_id, [7])
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json()["error"], "transfer_failed")

        status = self.client.get("/raffle").get_json()
        self.assertEqual(status["state"], "CALCULATING")
        self.assertEqual(status["player_count"], 3)
        self.assertEqual(status["balance"], "30")
        self.assertIsNone(status["recent_winner"])
        self.assertEqual(status["pending_request_id"], request_id)
        self.assertEqual(self.client.get("/raffle/winners").get_json(), [])

    def test_fulfill_requires_oracle_token(self) -> None:
        response = self._fulfill(1, [3], headers={"X-Oracle-Token": "wrong"})
        self.assertEqual(response.status_code, 401)

    def test_fulfill_unknown_request(self) -> None:
        response = self._fulfill(5, [3])
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "unknown_request")

    def test_config_and_health(self) -> None:
        config = self.client.get("/config").get_json()
        self.assertEqual(config["entrance_fee"], "10")
        self.assertEqual(config["num_words"], 1)
        self.assertEqual(config["request_confirmations"], 3)
        self.assertIsNone(config["vrf_coordinator"])
        self.assertEqual(self.client.get("/health").get_json(), {"status": "ok"})


    def _start_draw(self) -> int:
        for player in (ALICE, BOB, CAROL):
            self._enter(player)
        self.clock.now += 60
        return self.client.post("/raffle/upkeep").get_json()["request_id"]

    def _failing_once(self, method):
        calls = []

        def side_effect(*args, **kwargs):
            if not calls:
                calls.append(args)
                raise RuntimeError("database unavailable")
            return method(*args, **kwargs)

        return side_effect

    def test_entrant_must_be_an_address(self) -> None:
        response = self._enter("alice")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_request")

        response = self._enter("0x" + "a" * 40)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["player"], ALICE)
        self.assertEqual(self.client.get("/raffle/players").get_json(), [ALICE])

    def test_storage_failure_during_upkeep_keeps_round_open(self) -> None:
        for player in (ALICE, BOB):
            self._enter(player)
        self.clock.now += 60

        repo = self.service._repo
        with mock.patch.object(repo, "save", side_effect=self._failing_once(repo.save)):
            self.assertEqual(self.client.post("/raffle/upkeep").status_code, 500)
            status = self.client.get("/raffle").get_json()
            self.assertEqual(status["state"], "OPEN")
            self.assertIsNone(status["pending_request_id"])

            retry = self.client.post("/raffle/upkeep")
        self.assertEqual(retry.status_code, 202)
        self.assertEqual(retry.get_json()["request_id"], 2)
        self.assertEqual(self._fulfill(1, [0]).get_json()["error"], "unknown_request")

    def test_storage_failure_before_payout_pays_nothing(self) -> None:
        request_id = self._start_draw()

        repo = self.service._repo
        with mock.patch.object(repo, "save", side_effect=self._failing_once(repo.save)):
            self.assertEqual(self._fulfill(request_id, [14]).status_code, 500)
            self.assertEqual(self.rail.transfers, [])
            self.assertEqual(self.client.get("/raffle").get_json()["state"], "CALCULATING")

            self.assertEqual(self._fulfill(request_id, [14]).status_code, 200)
        self.assertEqual(self.rail.transfers, [(CAROL, 30)])

    def test_storage_failure_after_payout_never_pays_twice(self) -> None:
        request_id = self._start_draw()

        with mock.patch.object(
            self.service._repo, "mark_settlement", side_effect=RuntimeError("database unavailable")
        ):
            self.assertEqual(self._fulfill(request_id, [14]).status_code, 500)
        self.assertEqual(self.rail.transfers, [(CAROL, 30)])

        retry = self._fulfill(request_id, [14])
        self.assertEqual(retry.status_code, 409)
        self.assertEqual(retry.get_json()["error"], "unknown_request")
        self.assertEqual(self.rail.transfers, [(CAROL, 30)])

        status = self.client.get("/raffle").get_json()
        self.assertEqual(status["state"], "OPEN")
        self.assertEqual(status["recent_winner"], CAROL)
        self.assertEqual(self.client.get("/raffle/winners").get_json()[0]["status"], "paying")

    def test_unconfirmed_payout_is_recorded_for_reconciliation(self) -> None:
        request_id = self._start_draw()
        tx_hash = "0x" + "ef" * 32

        with mock.patch.object(
            self.rail, "transfer", side_effect=PayoutUnconfirmed(CAROL, 30, tx_hash)
        ):
            response = self._fulfill(request_id, [14])
        self.assertEqual(response.status_code, 504)
        self.assertEqual(response.get_json()["error"], "payout_unconfirmed")
        self.assertEqual(response.get_json()["tx_hash"], tx_hash)

        self.assertEqual(self.client.get("/raffle").get_json()["state"], "OPEN")
        winner = self.client.get("/raffle/winners").get_json()[0]
        self.assertEqual(winner["status"], "unconfirmed")
        self.assertEqual(winner["tx_hash"], tx_hash)
        self.assertEqual(self._fulfill(request_id, [14]).status_code, 409)

    def test_successful_settlement_is_marked_paid(self) -> None:
        request_id = self._start_draw()
        self._fulfill(request_id, [14])
        self.assertEqual(self.client.get("/raffle/winners").get_json()[0]["status"], "paid")

    def test_fulfill_rejected_without_configured_oracle_key(self) -> None:
        request_id = self._start_draw()
        os.environ.pop("ORACLE_API_KEY")
        config_module.load_settings.cache_clear()

        self.assertEqual(self._fulfill(request_id, [1], headers={}).status_code, 401)
        self.assertEqual(self._fulfill(request_id, [1]).status_code, 401)
        self.assertEqual(self.client.get("/raffle").get_json()["state"], "CALCULATING")
        self.assertEqual(self.rail.transfers, [])

    def test_verified_entries_credit_the_paid_value(self) -> None:
        self._start(FakeVerifier({TX_ALICE: (ALICE, 12), TX_BOB: (BOB, 10)}))

        response = self._enter(ALICE, 10, tx_hash=TX_ALICE)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self.client.get("/raffle").get_json()["balance"], "12")

        reused = self._enter(ALICE, 10, tx_hash=TX_ALICE)
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "payment_already_used")

        stolen = self._enter(ALICE, 10, tx_hash=TX_BOB)
        self.assertEqual(stolen.status_code, 400)
        self.assertEqual(stolen.get_json()["error"], "payment_not_verified")
        self.assertEqual(self.client.get("/raffle/players").get_json(), [ALICE])

        self.assertEqual(self._enter(BOB, 10, tx_hash=TX_BOB).status_code, 201)
        self.assertEqual(self.client.get("/raffle").get_json()["balance"], "22")

    def test_unbacked_entries_are_rejected_when_payments_are_verified(self) -> None:
        self._start(FakeVerifier({TX_ALICE: (ALICE, 12)}))

        missing = self._enter(ALICE, 10**24)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["error"], "payment_not_verified")

        inflated = self._enter(ALICE, 10**24, tx_hash=TX_ALICE)
        self.assertEqual(inflated.status_code, 400)
        self.assertEqual(inflated.get_json()["error"], "payment_not_verified")

        status = self.client.get("/raffle").get_json()
        self.assertEqual(status["balance"], "0")
        self.assertEqual(status["player_count"], 0)

        # The receipt was not consumed by the rejected entry.
        self.assertEqual(self._enter(ALICE, 10, tx_hash=TX_ALICE).status_code, 201)

    def test_in_memory_database_is_shared_across_threads(self) -> None:
        self._enter(ALICE)
        seen = []
        worker = threading.Thread(target=lambda: seen.append(self.service.snapshot().player_count))
        worker.start()
        worker.join()
        self.assertEqual(seen, [1])


if __name__ == "__main__":
    unittest.main()
