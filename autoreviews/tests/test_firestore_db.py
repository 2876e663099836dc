import unittest
from unittest.mock import MagicMock, patch

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import SERVER_TIMESTAMP as FIRESTORE_SERVER_TIMESTAMP

from autoreviews.documents import SERVER_TIMESTAMP
from autoreviews.errors import NotFound, TransactionFailed
from autoreviews.firestore_db import FirestoreDocumentStore
from autoreviews.query import ListingQueryBuilder


def _native_snapshot(path, data):
    snapshot = MagicMock()
    snapshot.reference.path = path
    snapshot.exists = data is not None
    snapshot.to_dict.return_value = data
    return snapshot


class FirestoreDocumentStoreTests(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.store = FirestoreDocumentStore(self.client, max_attempts=3)

    def test_get_converts_snapshot(self):
        self.client.document.return_value.get.return_value = _native_snapshot(
            "cars/a", {"name": "Civic"}
        )
        snapshot = self.store.get("cars/a")
        self.client.document.assert_called_with("cars/a")
        self.assertEqual(snapshot.id, "a")
        self.assertEqual(snapshot.to_dict(), {"name": "Civic"})

        self.client.document.return_value.get.return_value = _native_snapshot("cars/b", None)
        self.assertFalse(self.store.get("cars/b").exists)

    def test_set_translates_server_timestamp(self):
        self.store.set("cars/a", {"timestamp": SERVER_TIMESTAMP, "name": "Civic"})
        self.client.document.return_value.set.assert_called_once_with(
            {"timestamp": FIRESTORE_SERVER_TIMESTAMP, "name": "Civic"}, merge=False
        )

    def test_update_missing_document_raises_not_found(self):
        self.client.document.return_value.update.side_effect = google_exceptions.NotFound(
            "no doc"
        )
        with self.assertRaises(NotFound):
            self.store.update("cars/missing", {"photo": "x"})

    def test_add_returns_new_id(self):
        doc_ref = MagicMock()
        doc_ref.id = "new-id"
        self.client.collection.return_value.add.return_value = (None, doc_ref)
        self.assertEqual(self.store.add("cars", {"name": "Civic"}), "new-id")

    def test_query_translates_filters_and_ordering(self):
        query = ListingQueryBuilder().build(
            filters={"type": "SUV", "price": "$$", "sort": "Review"}
        )
        collection = self.client.collection.return_value
        after_type = collection.where.return_value
        after_price = after_type.where.return_value
        ordered = after_price.order_by.return_value
        ordered.stream.return_value = [_native_snapshot("cars/x", {"type": "SUV"})]

        results = self.store.query(query)

        self.client.collection.assert_called_once_with("cars")
        type_filter = collection.where.call_args.kwargs["filter"]
        self.assertEqual(
            (type_filter.field_path, type_filter.op_string, type_filter.value),
            ("type", "==", "SUV"),
        )
        price_filter = after_type.where.call_args.kwargs["filter"]
        self.assertEqual((price_filter.field_path, price_filter.value), ("price", 2))
        after_price.order_by.assert_called_once_with(
            "numRatings", direction=firestore.Query.DESCENDING
        )
        self.assertEqual([snapshot.id for snapshot in results], ["x"])

    def test_subscribe_wraps_watch(self):
        native_query = self.client.collection.return_value.order_by.return_value
        watch = native_query.on_snapshot.return_value
        received = []

        subscription = self.store.subscribe(ListingQueryBuilder().build(), received.append)
        callback = native_query.on_snapshot.call_args.args[0]
        callback([_native_snapshot("cars/a", {"avgRating": 4})], [], None)
        self.assertEqual([[doc.id for doc in docs] for docs in received], [["a"]])

        subscription.cancel()
        subscription.cancel()
        watch.unsubscribe.assert_called_once_with()

    def test_transaction_abort_maps_to_transaction_failed(self):
        with patch(
            "autoreviews.firestore_db.firestore.transactional",
            side_effect=lambda fn: MagicMock(side_effect=google_exceptions.Aborted("conflict")),
        ):
            with self.assertRaises(TransactionFailed):
                self.store.run_transaction(lambda transaction: None)
        self.client.transaction.assert_called_once_with(max_attempts=3)

    def test_exhausted_attempts_map_to_transaction_failed(self):
        with patch(
            "autoreviews.firestore_db.firestore.transactional",
            side_effect=lambda fn: MagicMock(
                side_effect=ValueError("Failed to commit transaction in 3 attempts.")
            ),
        ):
            with self.assertRaises(TransactionFailed):
                self.store.run_transaction(lambda transaction: None)

    def test_transaction_runs_function_with_wrapped_transaction(self):
        native_transaction = self.client.transaction.return_value
        self.client.document.return_value.get.return_value = _native_snapshot(
            "cars/a", {"numRatings": 1}
        )

        def _fn(transaction):
            snapshot = transaction.get("cars/a")
            transaction.update("cars/a", {"numRatings": snapshot.get("numRatings") + 1})
            return "done"

        with patch(
            "autoreviews.firestore_db.firestore.transactional",
            side_effect=lambda fn: (lambda transaction: fn(transaction)),
        ):
            self.assertEqual(self.store.run_transaction(_fn), "done")
        self.client.document.return_value.get.assert_called_with(
            transaction=native_transaction
        )
        native_transaction.update.assert_called_once_with(
            self.client.document.return_value, {"numRatings": 2}
        )


if __name__ == "__main__":
    unittest.main()
