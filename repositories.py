"""
Repository objects over the five collections.

A ``Store`` is built explicitly from a pymongo ``Database`` and handed to the
routes through the ``get_store`` dependency, so tests can swap in a
mongomock database.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from fastapi import Request
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import COMMENT, LIKE, SUBSCRIPTION, USER, VIDEO, create_document, utcnow
from errors import ConflictError
from schemas import Document, Like, LikeKind, LikeTarget, Subscription, User

logger = logging.getLogger(__name__)


class Repository:
    def __init__(self, collection: Collection):
        self.collection = collection

    def get(self, oid: ObjectId, projection: Optional[dict] = None) -> Optional[dict]:
        return self.collection.find_one({"_id": oid}, projection)

    def exists(self, oid: ObjectId) -> bool:
        return self.collection.find_one({"_id": oid}, {"_id": 1}) is not None

    def create(self, document: Document) -> dict:
        return create_document(self.collection, document.model_dump())

    def update(self, oid: ObjectId, changes: dict, projection: Optional[dict] = None) -> Optional[dict]:
        return self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": {**changes, "updatedAt": utcnow()}},
            projection=projection,
            return_document=ReturnDocument.AFTER,
        )

    def delete(self, oid: ObjectId) -> bool:
        return self.collection.delete_one({"_id": oid}).deleted_count == 1


class UserRepository(Repository):
    PRIVATE_FIELDS = {"password": 0, "refreshToken": 0}

    def get_public(self, oid: ObjectId) -> Optional[dict]:
        return self.get(oid, self.PRIVATE_FIELDS)

    def create(self, user: User) -> dict:
        try:
            doc = super().create(user)
        except DuplicateKeyError as exc:
            raise ConflictError("User with email or username already exists") from exc
        doc.pop("password", None)
        doc.pop("refreshToken", None)
        return doc

    def find_by_login(self, username: Optional[str] = None, email: Optional[str] = None) -> Optional[dict]:
        clauses = []
        if username:
            clauses.append({"username": username.strip().lower()})
        if email:
            clauses.append({"email": email.strip().lower()})
        if not clauses:
            return None
        return self.collection.find_one({"$or": clauses})

    def find_by_username(self, username: str) -> Optional[dict]:
        return self.collection.find_one({"username": username.strip().lower()}, self.PRIVATE_FIELDS)

    def set_refresh_token(self, oid: ObjectId, token: Optional[str]) -> None:
        if token is None:
            update = {"$unset": {"refreshToken": ""}, "$set": {"updatedAt": utcnow()}}
        else:
            update = {"$set": {"refreshToken": token, "updatedAt": utcnow()}}
        self.collection.update_one({"_id": oid}, update)

    def update_public(self, oid: ObjectId, changes: dict) -> Optional[dict]:
        try:
            return self.update(oid, changes, self.PRIVATE_FIELDS)
        except DuplicateKeyError as exc:
            raise ConflictError("Email is already in use") from exc


class VideoRepository(Repository):
    def toggle_publish(self, video: dict) -> Optional[dict]:
        return self.update(video["_id"], {"isPublished": not video.get("isPublished", True)})


class CommentRepository(Repository):
    def ids_for_video(self, video_id: ObjectId) -> List[ObjectId]:
        return [c["_id"] for c in self.collection.find({"video": video_id}, {"_id": 1})]

    def delete_for_video(self, video_id: ObjectId) -> int:
        return self.collection.delete_many({"video": video_id}).deleted_count


class LikeRepository(Repository):
    def find(self, user_id: ObjectId, target: LikeTarget) -> Optional[dict]:
        return self.collection.find_one({"likedBy": user_id, "kind": target.kind.value, "target": target.id})

    def toggle(self, user_id: ObjectId, target: LikeTarget) -> Optional[dict]:
        """Remove the like if present and return None, otherwise create and return it."""
        existing = self.find(user_id, target)
        if existing:
            self.collection.delete_one({"_id": existing["_id"]})
            return None
        try:
            return self.create(Like.of(user_id, target))
        except DuplicateKeyError as exc:
            raise ConflictError(f"{target.kind.value.capitalize()} is already liked") from exc

    def delete_for(self, kind: LikeKind, target_ids: Iterable[ObjectId]) -> int:
        ids = list(target_ids)
        if not ids:
            return 0
        return self.collection.delete_many({"kind": kind.value, "target": {"$in": ids}}).deleted_count


class SubscriptionRepository(Repository):
    def find(self, subscriber_id: ObjectId, channel_id: ObjectId) -> Optional[dict]:
        return self.collection.find_one({"subscriber": subscriber_id, "channel": channel_id})

    def toggle(self, subscriber_id: ObjectId, channel_id: ObjectId) -> Optional[dict]:
        existing = self.find(subscriber_id, channel_id)
        if existing:
            self.collection.delete_one({"_id": existing["_id"]})
            return None
        try:
            return self.create(Subscription(subscriber=subscriber_id, channel=channel_id))
        except DuplicateKeyError as exc:
            raise ConflictError("Already subscribed to this channel") from exc


class Store:
    def __init__(self, db: Database):
        self.db = db
        self.users = UserRepository(db[USER])
        self.videos = VideoRepository(db[VIDEO])
        self.comments = CommentRepository(db[COMMENT])
        self.likes = LikeRepository(db[LIKE])
        self.subscriptions = SubscriptionRepository(db[SUBSCRIPTION])

    def delete_video(self, video_id: ObjectId) -> None:
        comment_ids = self.comments.ids_for_video(video_id)
        removed_likes = self.likes.delete_for(LikeKind.COMMENT, comment_ids)
        removed_likes += self.likes.delete_for(LikeKind.VIDEO, [video_id])
        removed_comments = self.comments.delete_for_video(video_id)
        self.videos.delete(video_id)
        logger.info(
            "Deleted video %s with %d comments and %d likes", video_id, removed_comments, removed_likes
        )

    def delete_comment(self, comment_id: ObjectId) -> None:
        self.likes.delete_for(LikeKind.COMMENT, [comment_id])
        self.comments.delete(comment_id)

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()


def get_store(request: Request) -> Store:
    return request.app.state.store
