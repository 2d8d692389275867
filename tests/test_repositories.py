"""
Unit tests for the repository layer: toggles, uniqueness and cascades.
"""
from unittest.mock import patch

import pytest
from pymongo.errors import DuplicateKeyError

from errors import ConflictError
from schemas import LikeKind, LikeTarget


class TestLikeToggle:
    def test_toggle_once_creates_one_like(self, store, make_user, make_video):
        fan = make_user()
        video = make_video(make_user())

        like = store.likes.toggle(fan["_id"], LikeTarget.video(video["_id"]))

        assert like is not None
        assert like["kind"] == "video"
        assert like["target"] == video["_id"]
        assert store.likes.collection.count_documents({"likedBy": fan["_id"]}) == 1

    def test_toggle_twice_returns_to_absent(self, store, make_user, make_video):
        fan = make_user()
        target = LikeTarget.video(make_video(make_user())["_id"])

        store.likes.toggle(fan["_id"], target)
        assert store.likes.toggle(fan["_id"], target) is None

        assert store.likes.find(fan["_id"], target) is None
        assert store.likes.collection.count_documents({}) == 0

    def test_video_and_comment_likes_do_not_collide(self, store, make_user, make_video, make_comment):
        fan = make_user()
        video = make_video(fan)
        comment = make_comment(video, fan)

        store.likes.toggle(fan["_id"], LikeTarget.video(video["_id"]))
        store.likes.toggle(fan["_id"], LikeTarget.comment(comment["_id"]))

        kinds = sorted(doc["kind"] for doc in store.likes.collection.find({"likedBy": fan["_id"]}))
        assert kinds == ["comment", "video"]

    def test_unique_index_rejects_second_like(self, store, make_user, make_video):
        fan = make_user()
        target = LikeTarget.video(make_video(make_user())["_id"])
        store.likes.toggle(fan["_id"], target)

        with pytest.raises(DuplicateKeyError):
            store.likes.collection.insert_one({"likedBy": fan["_id"], "kind": "video", "target": target.id})

    def test_lost_race_surfaces_as_conflict(self, store, make_user, make_video):
        fan = make_user()
        target = LikeTarget.video(make_video(make_user())["_id"])
        store.likes.toggle(fan["_id"], target)

        # both togglers saw the like as absent
        with patch.object(store.likes, "find", return_value=None):
            with pytest.raises(ConflictError):
                store.likes.toggle(fan["_id"], target)

        assert store.likes.collection.count_documents({}) == 1


class TestSubscriptionToggle:
    def test_subscribe_then_unsubscribe(self, store, make_user):
        fan = make_user()
        channel = make_user()

        created = store.subscriptions.toggle(fan["_id"], channel["_id"])
        assert created["subscriber"] == fan["_id"]
        assert created["channel"] == channel["_id"]

        assert store.subscriptions.toggle(fan["_id"], channel["_id"]) is None
        assert store.subscriptions.collection.count_documents({}) == 0

    def test_lost_race_surfaces_as_conflict(self, store, make_user):
        fan = make_user()
        channel = make_user()
        store.subscriptions.toggle(fan["_id"], channel["_id"])

        with patch.object(store.subscriptions, "find", return_value=None):
            with pytest.raises(ConflictError):
                store.subscriptions.toggle(fan["_id"], channel["_id"])


class TestUsers:
    def test_create_hides_private_fields(self, make_user):
        user = make_user("alice")

        assert "password" not in user
        assert "refreshToken" not in user
        assert user["username"] == "alice"

    def test_duplicate_username_is_conflict(self, make_user):
        make_user("alice")

        with pytest.raises(ConflictError):
            make_user("alice")

    def test_refresh_token_set_and_cleared(self, store, make_user):
        user = make_user()

        store.users.set_refresh_token(user["_id"], "token")
        assert store.users.get(user["_id"])["refreshToken"] == "token"

        store.users.set_refresh_token(user["_id"], None)
        assert "refreshToken" not in store.users.get(user["_id"])

    def test_find_by_login_matches_either_identifier(self, store, make_user):
        user = make_user("alice")

        assert store.users.find_by_login(username="ALICE")["_id"] == user["_id"]
        assert store.users.find_by_login(email="alice@example.com")["_id"] == user["_id"]
        assert store.users.find_by_login() is None


class TestCascades:
    def test_delete_video_removes_comments_and_likes(self, store, make_user, make_video, make_comment):
        owner = make_user()
        fan = make_user()
        video = make_video(owner)
        kept = make_video(owner)
        comment = make_comment(video, fan)
        store.likes.toggle(fan["_id"], LikeTarget.video(video["_id"]))
        store.likes.toggle(owner["_id"], LikeTarget.comment(comment["_id"]))
        store.likes.toggle(fan["_id"], LikeTarget.video(kept["_id"]))

        store.delete_video(video["_id"])

        assert store.videos.get(video["_id"]) is None
        assert store.comments.collection.count_documents({"video": video["_id"]}) == 0
        remaining = list(store.likes.collection.find({}))
        assert [like["target"] for like in remaining] == [kept["_id"]]

    def test_delete_comment_removes_its_likes(self, store, make_user, make_video, make_comment):
        fan = make_user()
        comment = make_comment(make_video(fan), fan)
        store.likes.toggle(fan["_id"], LikeTarget.comment(comment["_id"]))

        store.delete_comment(comment["_id"])

        assert store.comments.get(comment["_id"]) is None
        assert store.likes.collection.count_documents({"kind": LikeKind.COMMENT.value}) == 0
