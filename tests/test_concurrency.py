"""
Threaded tests against a file-backed SQLite database.

Each worker gets its own app context and therefore its own session, the
way separate request handlers would.
"""
import os
import tempfile
import threading
import time
import unittest

from posledger import create_app
from posledger.core import build_core
from posledger.errors import InsufficientStock
from posledger.extensions import db
from posledger.models import MovementKind, Product, Sale, StockMovement

from .helpers import sale_request


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "CONCURRENCY_RETRY_ATTEMPTS": 5,
            "CONCURRENCY_BACKOFF_BASE": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            core = build_core()
            product = Product(sku="CONCUR-1", name="Concurrent Product", price_cents=1000, min_stock=0)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id
            core.stock.receive(self.product_id, 10, kind=MovementKind.INITIAL_STOCK)

            register = core.create_register("REG-C", "Concurrency Counter").unwrap()
            self.register_id = register.id
            core.open_register(self.register_id, 0).unwrap()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, workers):
        threads = [threading.Thread(target=worker) for worker in workers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _commit_until_settled(self, request, key, attempts=100):
        """Submit like a client would: resubmit while the core says to retry."""
        core = build_core()
        for _ in range(attempts):
            outcome = core.create_sale(request, key)
            if outcome.ok or not outcome.error.retryable:
                return outcome
            time.sleep(0.02)
        return outcome

    def test_same_key_commits_once(self):
        request = sale_request(self.product_id, 4, register_id=self.register_id)
        outcomes = []
        errors = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    outcome = self._commit_until_settled(request, "SAME-KEY")
                    with lock:
                        outcomes.append(outcome)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker] * 5)

        self.assertFalse(errors)
        self.assertEqual(len(outcomes), 5)
        self.assertTrue(all(o.ok for o in outcomes))
        self.assertEqual(len({o.value.sale_id for o in outcomes}), 1)
        self.assertEqual(sum(1 for o in outcomes if not o.replayed), 1)

        with self.app.app_context():
            core = build_core()
            self.assertEqual(core.stock.current_quantity(self.product_id), 6)
            self.assertEqual(db.session.query(Sale).count(), 1)
            self.assertEqual(
                db.session.query(StockMovement).filter_by(kind=MovementKind.SALE).count(), 1
            )
            self.assertTrue(core.verify_ledgers().ok)

    def test_concurrent_sales_cannot_oversell(self):
        outcomes = []
        errors = []
        lock = threading.Lock()

        def make_worker(key):
            def worker():
                with self.app.app_context():
                    try:
                        request = sale_request(self.product_id, 6, register_id=self.register_id)
                        outcome = self._commit_until_settled(request, key)
                        with lock:
                            outcomes.append(outcome)
                    except Exception as exc:
                        with lock:
                            errors.append(exc)
                    finally:
                        db.session.remove()
            return worker

        self._run_threads([make_worker("OVERSELL-1"), make_worker("OVERSELL-2")])

        self.assertFalse(errors)
        self.assertEqual(sum(1 for o in outcomes if o.ok), 1)
        rejected = [o.error for o in outcomes if not o.ok]
        self.assertEqual(len(rejected), 1)
        self.assertIsInstance(rejected[0], InsufficientStock)

        with self.app.app_context():
            core = build_core()
            self.assertEqual(core.stock.current_quantity(self.product_id), 4)
            self.assertEqual(core.stock.recomputed_quantity(self.product_id), 4)

    def test_parallel_cash_movements_keep_drawer_consistent(self):
        errors = []
        lock = threading.Lock()

        with self.app.app_context():
            session_id = build_core().cash.get_open_session(self.register_id).id

        def worker():
            with self.app.app_context():
                try:
                    core = build_core()
                    for _ in range(5):
                        outcome = core.record_cash_movement(session_id, "DEPOSIT", 100)
                        while not outcome.ok and outcome.error.retryable:
                            time.sleep(0.02)
                            outcome = core.record_cash_movement(session_id, "DEPOSIT", 100)
                        outcome.unwrap()
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker] * 4)

        self.assertFalse(errors)
        with self.app.app_context():
            core = build_core()
            self.assertEqual(core.cash.balance(session_id), 2_000)
            self.assertEqual(core.cash.verify(), [])


if __name__ == "__main__":
    unittest.main()
