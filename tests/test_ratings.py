"""Tour rating aggregates: recompute, apply and the review mutation hooks."""

import dataclasses
from unittest import mock

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import factory
import ratings
from database import REVIEWS, TOURS
from errors import NotFound, ValidationError
from ratings import AggregateResult, MutationContext, ReviewConsistencyHooks
from resources import REVIEW


def _review(database, tour, user, rating, text="Lovely tour"):
    return factory.create_one(
        database,
        REVIEW,
        {"review": text, "rating": rating, "tour": str(tour["_id"]), "user": str(user["_id"])},
    )


def _stored_tour(database, tour):
    return database[TOURS].find_one({"_id": tour["_id"]})


class TestRoundRating:
    @pytest.mark.parametrize(
        "value, expected",
        [(4.666666, 4.7), (4.25, 4.3), (4.0, 4.0), (4.04, 4.0), (3.75, 3.8)],
    )
    def test_half_up_to_one_decimal(self, value, expected):
        assert ratings.round_rating(value) == expected


class TestRecompute:
    def test_no_reviews(self, database, make_tour):
        tour = make_tour()
        assert ratings.recompute(database, tour["_id"]) == AggregateResult(count=0, average=None)

    def test_mean_is_not_rounded(self, database, make_tour, make_user):
        tour = make_tour()
        for rating in (5, 5, 4):
            user, _ = make_user()
            _review(database, tour, user, rating)

        result = ratings.recompute(database, tour["_id"])

        assert result.count == 3
        assert result.average == pytest.approx(14 / 3)

    def test_only_counts_reviews_of_that_tour(self, database, make_tour, make_user):
        tour = make_tour()
        other = make_tour(name="The Sea Explorer Tour")
        user, _ = make_user()
        _review(database, tour, user, 2)
        _review(database, other, user, 5)

        assert ratings.recompute(database, tour["_id"]) == AggregateResult(count=1, average=2.0)

    def test_is_idempotent(self, database, make_tour, make_user):
        tour = make_tour()
        for rating in (3, 4):
            user, _ = make_user()
            _review(database, tour, user, rating)

        assert ratings.recompute(database, tour["_id"]) == ratings.recompute(database, tour["_id"])

    def test_has_no_side_effects(self, database, make_tour):
        tour = make_tour()
        database[TOURS].update_one({"_id": tour["_id"]}, {"$set": {"ratingsAverage": 2.2, "ratingsQuantity": 9}})

        ratings.recompute(database, tour["_id"])

        stored = _stored_tour(database, tour)
        assert (stored["ratingsAverage"], stored["ratingsQuantity"]) == (2.2, 9)


class TestApplyAggregate:
    def test_rounds_average_when_stored(self, database, make_tour):
        tour = make_tour()
        ratings.apply_aggregate(database, tour["_id"], AggregateResult(count=3, average=14 / 3))

        stored = _stored_tour(database, tour)
        assert stored["ratingsQuantity"] == 3
        assert stored["ratingsAverage"] == 4.7

    def test_empty_result_applies_default(self, database, make_tour):
        tour = make_tour()
        database[TOURS].update_one({"_id": tour["_id"]}, {"$set": {"ratingsAverage": 3.0, "ratingsQuantity": 2}})

        ratings.apply_aggregate(database, tour["_id"], AggregateResult(count=0, average=None))

        stored = _stored_tour(database, tour)
        assert stored["ratingsQuantity"] == 0
        assert stored["ratingsAverage"] == 4.5


class TestReviewMutationsKeepTourConsistent:
    def test_scenario_add_update_delete(self, database, make_tour, make_user):
        tour = make_tour()
        users = [make_user()[0] for _ in range(3)]

        _review(database, tour, users[0], 4)
        _review(database, tour, users[1], 5)
        assert ratings.recompute(database, tour["_id"]) == AggregateResult(2, 4.5)

        third = _review(database, tour, users[2], 3)
        assert ratings.recompute(database, tour["_id"]) == AggregateResult(3, 4.0)
        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (3, 4.0)

        factory.delete_one(database, REVIEW, third["_id"])
        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (2, 4.5)

        for review in list(database[REVIEWS].find({"tour": tour["_id"]})):
            factory.delete_one(database, REVIEW, review["_id"])

        assert ratings.recompute(database, tour["_id"]) == AggregateResult(0, None)
        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (0, 4.5)

    def test_update_rating_refreshes_tour(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()
        review = _review(database, tour, user, 2)

        factory.update_one(database, REVIEW, review["_id"], {"rating": 5})

        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (1, 5.0)

    def test_mixed_sequence_matches_live_reviews(self, database, make_tour, make_user):
        tour = make_tour()
        created = []
        for rating in (1, 2, 5, 4, 4):
            user, _ = make_user()
            created.append(_review(database, tour, user, rating))
        factory.update_one(database, REVIEW, created[0]["_id"], {"rating": 3})
        factory.delete_one(database, REVIEW, created[2]["_id"])

        live = [r["rating"] for r in database[REVIEWS].find({"tour": tour["_id"]})]
        stored = _stored_tour(database, tour)
        assert stored["ratingsQuantity"] == len(live) == 4
        assert stored["ratingsAverage"] == ratings.round_rating(sum(live) / len(live))

    def test_duplicate_review_by_same_author_is_rejected(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()
        _review(database, tour, user, 4)

        with pytest.raises(ValidationError):
            _review(database, tour, user, 1, text="Changed my mind")

        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (1, 4.0)

    def test_review_requires_existing_tour(self, database, make_user):
        user, _ = make_user()
        with pytest.raises(ValidationError):
            factory.create_one(
                database, REVIEW, {"review": "Nice", "rating": 4, "tour": str(ObjectId()), "user": str(user["_id"])}
            )


class RecordingHooks(ReviewConsistencyHooks):
    def __init__(self):
        super().__init__(attempts=1)
        self.contexts = []

    def after_mutation(self, database, ctx):
        self.contexts.append(ctx)
        super().after_mutation(database, ctx)


class TestPreImageCapture:
    def test_delete_refreshes_tour_from_captured_pre_image(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()
        review = _review(database, tour, user, 1)
        hooks = RecordingHooks()
        resource = dataclasses.replace(REVIEW, hooks=hooks)

        factory.delete_one(database, resource, review["_id"])

        ctx = hooks.contexts[0]
        assert ctx.operation == "delete"
        assert ctx.pre_image["tour"] == tour["_id"]
        assert database[REVIEWS].find_one({"_id": review["_id"]}) is None
        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (0, 4.5)

    def test_pre_image_is_used_even_if_result_lacks_tour(self, database, make_tour):
        tour = make_tour()
        hooks = ReviewConsistencyHooks(attempts=1)
        ctx = MutationContext(operation="delete", filter={}, pre_image={"_id": ObjectId(), "tour": tour["_id"]}, result={"_id": ObjectId()})

        with mock.patch.object(ratings, "refresh_tour_ratings") as refresh:
            hooks.after_mutation(database, ctx)

        refresh.assert_called_once_with(database, tour["_id"])

    def test_failed_mutation_fires_no_refresh(self, database):
        with mock.patch.object(ratings, "refresh_tour_ratings") as refresh:
            with pytest.raises(NotFound):
                factory.delete_one(database, REVIEW, ObjectId())
            with pytest.raises(NotFound):
                factory.update_one(database, REVIEW, ObjectId(), {"rating": 3})
        refresh.assert_not_called()

    def test_invalid_update_fires_no_refresh(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()
        review = _review(database, tour, user, 4)

        with mock.patch.object(ratings, "refresh_tour_ratings") as refresh:
            with pytest.raises(ValidationError):
                factory.update_one(database, REVIEW, review["_id"], {"rating": 9})
        refresh.assert_not_called()

    def test_one_refresh_per_mutation(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()

        with mock.patch.object(ratings, "refresh_tour_ratings") as refresh:
            review = _review(database, tour, user, 4)
            factory.update_one(database, REVIEW, review["_id"], {"rating": 2})
            factory.delete_one(database, REVIEW, review["_id"])

        assert refresh.call_count == 3


class TestRefreshFailures:
    def _broken_database(self):
        database = mock.MagicMock()
        database.__getitem__.return_value.aggregate.side_effect = PyMongoError("store unavailable")
        return database

    def test_failure_is_logged_not_raised(self):
        database = self._broken_database()
        tour_id = ObjectId()

        with mock.patch.object(ratings, "logger") as logger:
            assert ratings.refresh_logged(database, tour_id, attempts=2) is None

        assert logger.warning.call_count == 2
        logger.error.assert_called_once_with("ratings_refresh_abandoned", tour_id=str(tour_id), attempts=2)

    def test_unexpected_error_is_logged_not_raised(self, database, make_tour):
        tour = make_tour()

        with mock.patch.object(ratings, "recompute", side_effect=RuntimeError("bad document")):
            with mock.patch.object(ratings, "logger") as logger:
                assert ratings.refresh_logged(database, tour["_id"], attempts=2) is None

        logger.exception.assert_called_once_with("ratings_refresh_error", tour_id=str(tour["_id"]), attempt=1)
        logger.warning.assert_not_called()

    def test_review_create_survives_unexpected_refresh_error(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()

        with mock.patch.object(ratings, "apply_aggregate", side_effect=KeyError("ratingsAverage")):
            review = _review(database, tour, user, 3)

        assert database[REVIEWS].find_one({"_id": review["_id"]}) is not None

    def test_retry_succeeds_after_transient_failure(self, database, make_tour):
        tour = make_tour()
        real = ratings.recompute
        calls = {"n": 0}

        def flaky(db, tour_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise PyMongoError("blip")
            return real(db, tour_id)

        with mock.patch.object(ratings, "recompute", side_effect=flaky):
            result = ratings.refresh_logged(database, tour["_id"], attempts=2)

        assert result == AggregateResult(0, None)

    def test_mutation_succeeds_when_refresh_fails(self, database, make_tour, make_user):
        tour = make_tour()
        user, _ = make_user()

        with mock.patch.object(ratings, "recompute", side_effect=PyMongoError("down")):
            review = _review(database, tour, user, 5)

        assert database[REVIEWS].find_one({"_id": review["_id"]}) is not None
        stored = _stored_tour(database, tour)
        assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (0, 4.5)
