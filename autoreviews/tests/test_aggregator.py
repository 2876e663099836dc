import random
import threading
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from autoreviews.aggregator import RatingAggregator, coerce_rating, next_aggregate
from autoreviews.db import InMemoryDocumentStore, SqlDocumentStore
from autoreviews.errors import InvalidArgument, NotFound, TransactionFailed
from autoreviews.kinds import CAR, RESTAURANT
from autoreviews.listings import EntityRepository
from autoreviews.models import Review


class RatingAggregatorTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.repository = EntityRepository(self.store, CAR)
        self.aggregator = RatingAggregator(self.store, CAR)
        self.car_id = self.repository.create_entity(
            {"name": "Honda Civic (2022)", "type": "Sedan", "make": "Honda", "price": 2}
        )

    def test_fresh_entity_has_zero_average(self):
        car = self.repository.get_entity(self.car_id)
        self.assertEqual(car.num_ratings, 0)
        self.assertEqual(car.sum_rating, 0)
        self.assertEqual(car.avg_rating, 0)

    def test_aggregates_match_ratings_after_sequence(self):
        ratings = [5, 3, 4, 1, 2, 5, 5]
        for rating in ratings:
            self.aggregator.add_review(
                self.car_id, Review(rating=rating, text="ok", user_id="u1")
            )
        car = self.repository.get_entity(self.car_id)
        self.assertEqual(car.num_ratings, len(ratings))
        self.assertEqual(car.sum_rating, sum(ratings))
        self.assertAlmostEqual(car.avg_rating, sum(ratings) / len(ratings))
        stored = self.store.get(CAR.entity_path(self.car_id)).to_dict()
        self.assertAlmostEqual(stored["avgRating"], sum(ratings) / len(ratings))
        self.assertEqual(len(self.repository.list_ratings(self.car_id)), len(ratings))

    def test_records_last_reviewer_and_rating_document(self):
        rating_id = self.aggregator.add_review(
            self.car_id,
            {"rating": 4, "text": "Smooth ride", "userId": "alice", "photoUrl": "https://x/p.png"},
        )
        car = self.repository.get_entity(self.car_id)
        self.assertEqual(car.last_review_user_id, "alice")
        [rating] = self.repository.list_ratings(self.car_id)
        self.assertEqual(rating.id, rating_id)
        self.assertEqual(rating.rating, 4)
        self.assertEqual(rating.text, "Smooth ride")
        self.assertEqual(rating.user_id, "alice")
        self.assertEqual(rating.photo_url, "https://x/p.png")

    def test_client_timestamp_is_replaced_by_server_time(self):
        client_time = datetime(2001, 1, 1, tzinfo=timezone.utc)
        before = datetime.now(timezone.utc)
        self.aggregator.add_review(
            self.car_id,
            {"rating": 3, "text": "fine", "userId": "bob", "timestamp": client_time},
        )
        [rating] = self.repository.list_ratings(self.car_id)
        self.assertNotEqual(rating.timestamp, client_time)
        self.assertGreaterEqual(rating.timestamp, before)

    def test_missing_aggregate_fields_count_as_zero(self):
        self.store.set("cars/legacy", {"name": "Old record"})
        self.aggregator.add_review("legacy", Review(rating=2, text="meh"))
        stored = self.store.get("cars/legacy").to_dict()
        self.assertEqual(stored["numRatings"], 1)
        self.assertEqual(stored["sumRating"], 2)
        self.assertEqual(stored["avgRating"], 2)

    def test_invalid_arguments(self):
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review("", Review(rating=4, text="x"))
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review(None, Review(rating=4, text="x"))
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review(self.car_id, None)
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review(self.car_id, {"text": "no rating"})
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review(self.car_id, Review(rating=6, text="x"))
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review("a/b", Review(rating=4, text="x"))
        self.assertEqual(self.repository.get_entity(self.car_id).num_ratings, 0)

    def test_review_text_is_required(self):
        for review in (
            {"rating": 4},
            {"rating": 4, "text": ""},
            {"rating": 4, "text": "   "},
            {"rating": 4, "text": None},
            Review(rating=4, text=""),
        ):
            with self.subTest(review=review):
                with self.assertRaises(InvalidArgument):
                    self.aggregator.add_review(self.car_id, review)
        self.assertEqual(self.repository.get_entity(self.car_id).num_ratings, 0)
        self.assertEqual(self.repository.list_ratings(self.car_id), [])

    def test_non_string_entity_id_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            self.aggregator.add_review(5, Review(rating=4, text="x"))

    def test_unknown_entity_is_not_found_and_writes_nothing(self):

        with self.assertRaises(NotFound):
            self.aggregator.add_review("nope", Review(rating=4, text="x"))
        self.assertFalse(self.store.get("cars/nope").exists)
        self.assertEqual(self.repository.list_ratings("nope"), [])

    def test_write_phase_abort_leaves_no_trace(self):
        with patch.object(
            self.store, "_commit", side_effect=TransactionFailed("write rejected")
        ):
            with self.assertRaises(TransactionFailed):
                self.aggregator.add_review(self.car_id, Review(rating=5, text="x"))
        car = self.repository.get_entity(self.car_id)
        self.assertEqual((car.num_ratings, car.sum_rating, car.avg_rating), (0, 0, 0))
        self.assertEqual(self.repository.list_ratings(self.car_id), [])

    def test_persistent_contention_fails_without_partial_writes(self):
        entity_path = CAR.entity_path(self.car_id)
        original_read = self.store._read

        def read_then_interfere(path):
            result = original_read(path)
            if path == entity_path:
                self.store.update(entity_path, {"name": "renamed"})
            return result

        with patch.object(self.store, "_read", side_effect=read_then_interfere):
            with self.assertRaises(TransactionFailed):
                self.aggregator.add_review(self.car_id, Review(rating=5, text="x"))
        car = self.repository.get_entity(self.car_id)
        self.assertEqual(car.num_ratings, 0)
        self.assertEqual(self.repository.list_ratings(self.car_id), [])

    def test_concurrent_reviews_are_both_counted(self):
        entity_path = CAR.entity_path(self.car_id)
        barrier = threading.Barrier(2, timeout=5)
        synced = threading.local()
        original_read = self.store._read

        def read_in_lockstep(path):
            result = original_read(path)
            if path == entity_path and not getattr(synced, "done", False):
                # Both writers hold the same snapshot before either commits.
                synced.done = True
                barrier.wait()
            return result

        errors = []

        def _review(rating):
            try:
                self.aggregator.add_review(self.car_id, Review(rating=rating, text="x"))
            except Exception as exc:
                errors.append(exc)

        with patch.object(self.store, "_read", side_effect=read_in_lockstep):
            threads = [threading.Thread(target=_review, args=(r,)) for r in (4, 2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        self.assertEqual(errors, [])
        car = self.repository.get_entity(self.car_id)
        self.assertEqual(car.num_ratings, 2)
        self.assertEqual(car.sum_rating, 6)
        self.assertAlmostEqual(car.avg_rating, 3.0)

    def test_many_concurrent_reviews_keep_invariant(self):
        store = InMemoryDocumentStore(max_attempts=100)
        aggregator = RatingAggregator(store, CAR)
        store.set("cars/busy", {"name": "Busy", "numRatings": 0, "sumRating": 0, "avgRating": 0})
        ratings = [random.randint(1, 5) for _ in range(40)]
        threads = [
            threading.Thread(
                target=aggregator.add_review, args=("busy", Review(rating=r, text="x"))
            )
            for r in ratings
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        stored = store.get("cars/busy").to_dict()
        self.assertEqual(stored["numRatings"], len(ratings))
        self.assertEqual(stored["sumRating"], sum(ratings))
        self.assertAlmostEqual(stored["avgRating"], sum(ratings) / len(ratings))

    def test_restaurants_use_their_own_collection(self):
        aggregator = RatingAggregator(self.store, RESTAURANT)
        restaurant_id = EntityRepository(self.store, RESTAURANT).create_entity(
            {"name": "Pizza Place", "category": "Pizza", "city": "Oslo", "price": 1}
        )
        aggregator.add_review(restaurant_id, Review(rating=5, text="great"))
        self.assertEqual(
            self.store.get(f"restaurants/{restaurant_id}").get("numRatings"), 1
        )
        with self.assertRaises(NotFound):
            aggregator.add_review(self.car_id, Review(rating=5, text="wrong kind"))


class RatingAggregatorSqlTests(unittest.TestCase):
    def test_add_review_on_sql_store(self):
        store = SqlDocumentStore("sqlite+pysqlite:///:memory:")
        repository = EntityRepository(store, CAR)
        car_id = repository.create_entity({"name": "Golf", "make": "Volkswagen", "price": 2})
        aggregator = RatingAggregator(store, CAR)
        aggregator.add_review(car_id, Review(rating=4, text="a", user_id="u1"))
        aggregator.add_review(car_id, Review(rating=2, text="b", user_id="u2"))

        car = repository.get_entity(car_id)
        self.assertEqual((car.num_ratings, car.sum_rating), (2, 6))
        self.assertAlmostEqual(car.avg_rating, 3.0)
        self.assertEqual(car.last_review_user_id, "u2")
        self.assertEqual(car.details, {"make": "Volkswagen"})
        ratings = repository.list_ratings(car_id)
        self.assertCountEqual([r.user_id for r in ratings], ["u1", "u2"])
        self.assertTrue(all(isinstance(r.timestamp, datetime) for r in ratings))

    def test_database_outage_during_read_is_transaction_failure(self):
        store = SqlDocumentStore("sqlite+pysqlite:///:memory:")
        car_id = EntityRepository(store, CAR).create_entity({"name": "Golf", "price": 2})
        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(store, "Session", side_effect=outage):
            with self.assertRaises(TransactionFailed):
                RatingAggregator(store, CAR).add_review(
                    car_id, Review(rating=4, text="a", user_id="u1")
                )
        self.assertEqual(EntityRepository(store, CAR).get_entity(car_id).num_ratings, 0)



class RatingHelpersTests(unittest.TestCase):
    def test_coerce_rating(self):
        self.assertEqual(coerce_rating(3), 3)
        self.assertEqual(coerce_rating("4"), 4)
        self.assertEqual(coerce_rating(5.0), 5)
        for bad in (0, 6, "", "abc", "-1", 2.5, True, None, [3]):
            with self.subTest(value=bad):
                with self.assertRaises(InvalidArgument):
                    coerce_rating(bad)

    def test_next_aggregate(self):
        self.assertEqual(
            next_aggregate(None, 4), {"numRatings": 1, "sumRating": 4, "avgRating": 4.0}
        )
        self.assertEqual(
            next_aggregate({"numRatings": 2, "sumRating": 9}, 3),
            {"numRatings": 3, "sumRating": 12, "avgRating": 4.0},
        )


if __name__ == "__main__":
    unittest.main()
