import threading
from datetime import datetime
from urllib.parse import parse_qsl, urlsplit

import mongomock
import pytest

import database
import inventory
import users
from circulation import CirculationService
from config import Settings
from vnpay import VnpayGateway, canonical_query, sign

SECRET = "TESTSECRETKEY0123456789"
T0 = datetime(2026, 3, 2, 9, 0, 0)


class LockedCollection:
    """Runs every collection call under one lock.

    mongomock is not thread safe; MongoDB applies each single document
    operation atomically, and that is all the lock gives. Multi step flows
    in the service still interleave between calls.
    """

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def locked(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)
        return locked


class LockedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.RLock()

    def __getitem__(self, name):
        with self._lock:
            collection = self._db[name]
        return LockedCollection(collection, self._lock)


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()["library_test"]
    database.ensure_indexes(mongo)
    return mongo


@pytest.fixture
def shared_db(db):
    """The same database, safe to use from several threads."""
    return LockedDatabase(db)


@pytest.fixture
def settings():
    return Settings(
        database_url="mongodb://localhost:27017",
        database_name="library_test",
        borrow_days=7,
        renew_days=7,
        max_renewals=2,
        fine_per_day=2000,
        fine_grace_hours=2,
        fine_max=50000,
        vnpay_tmn_code="TESTTMN1",
        vnpay_hash_secret=SECRET,
        vnpay_payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        vnpay_return_url="http://localhost:8000/api/v1/borrow/payment/vnpay/return",
        frontend_url="http://localhost:5173",
    )


@pytest.fixture
def gateway(settings):
    return VnpayGateway.from_settings(settings)


@pytest.fixture
def service(db, settings, gateway):
    return CirculationService(db, settings, gateway)


@pytest.fixture
def book(db):
    result = inventory.add_book_copies(
        db, isbn="978-0-441-17271-9", title="Dune", author="Frank Herbert", price=10000, quantity=2
    )
    return result["book"]


@pytest.fixture
def alice(db):
    return users.register_user(db, "Alice Reader", "alice@example.com")


@pytest.fixture
def bob(db):
    return users.register_user(db, "Bob Reader", "bob@example.com")


@pytest.fixture
def carol(db):
    return users.register_user(db, "Carol Reader", "carol@example.com")


def run_together(calls):
    """Start ``calls`` on separate threads at the same moment.

    Returns the results of the calls that succeeded and the errors raised
    by the others.
    """
    barrier = threading.Barrier(len(calls))
    results, errors = [], []

    def run(call):
        barrier.wait()
        try:
            results.append(call())
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


def gateway_callback(payment_url, response_code="00", secret=SECRET, **overrides):
    """Build the query a gateway would send back for ``payment_url``."""
    params = dict(parse_qsl(urlsplit(payment_url).query))
    params.pop("vnp_SecureHash", None)
    params = {
        "vnp_Amount": params["vnp_Amount"],
        "vnp_TxnRef": params["vnp_TxnRef"],
        "vnp_OrderInfo": params["vnp_OrderInfo"],
        "vnp_TmnCode": params["vnp_TmnCode"],
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TransactionNo": "14012345",
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20260315100000",
    }
    params.update(overrides)
    params["vnp_SecureHash"] = sign(secret, canonical_query(params))
    return params
