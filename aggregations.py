"""
Reporting pipelines.

Each report is a single MongoDB aggregation over one collection that joins
the others with ``$lookup``, so routes never stitch documents together
client side. Pipelines are built by plain functions and run by
``AggregationEngine``; a failing pipeline is logged and re-raised as a
``DependencyError`` without exposing the driver error to the caller.
"""
import logging
import math
import re
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from database import COMMENT, LIKE, SUBSCRIPTION, USER, VIDEO
from errors import DependencyError, NotFoundError, ValidationError
from repositories import Store
from schemas import LikeKind

logger = logging.getLogger(__name__)

CHANNEL_FIELDS = ("username", "fullName", "avatar")
VIDEO_SORT_FIELDS = ("createdAt", "title", "duration", "views")

# output name -> field on the joined document
LIKED_FIELDS = {
    LikeKind.VIDEO: {"title": "title", "description": "description", "thumbnailUrl": "thumbnail", "createdAt": "createdAt"},
    LikeKind.COMMENT: {"text": "content", "createdAt": "createdAt"},
}


def page_stages(page: int, limit: int) -> List[dict]:
    return [{"$skip": (page - 1) * limit}, {"$limit": limit}]


def join_one(source: str, local_field: str, as_field: str, foreign_field: str = "_id", keep_missing: bool = False) -> List[dict]:
    """``$lookup`` a single document and flatten it.

    With ``keep_missing`` the join is a left join and documents without a
    match keep flowing with ``as_field`` absent; otherwise they are dropped.
    """
    unwind = {"path": f"${as_field}", "preserveNullAndEmptyArrays": True} if keep_missing else f"${as_field}"
    return [
        {"$lookup": {"from": source, "localField": local_field, "foreignField": foreign_field, "as": as_field}},
        {"$unwind": unwind},
    ]


def comment_feed_pipeline(video_id: ObjectId, page: int, limit: int) -> List[dict]:
    return [
        {"$match": {"video": video_id}},
        *join_one(USER, "owner", "ownerDetails"),
        {"$project": {"content": 1, "createdAt": 1, "ownerDetails.username": 1, "ownerDetails.avatar": 1}},
        {"$sort": {"createdAt": -1, "_id": -1}},
        {"$facet": {"docs": page_stages(page, limit), "total": [{"$count": "count"}]}},
    ]


def channel_analytics_pipeline(channel_id: ObjectId) -> List[dict]:
    return [
        {"$match": {"owner": channel_id}},
        {
            "$facet": {
                "totalVideos": [{"$count": "count"}],
                "totalLikes": [
                    {"$lookup": {"from": LIKE, "localField": "_id", "foreignField": "target", "as": "likes"}},
                    {"$unwind": "$likes"},
                    {"$match": {"likes.kind": LikeKind.VIDEO.value}},
                    {"$count": "count"},
                ],
                # every matched video shares the same owner, so one is enough to reach the channel's edges
                "totalSubscribers": [
                    {"$limit": 1},
                    {"$lookup": {"from": SUBSCRIPTION, "localField": "owner", "foreignField": "channel", "as": "subscriptions"}},
                    {"$unwind": "$subscriptions"},
                    {"$count": "count"},
                ],
            }
        },
    ]


def video_feed_pipeline(filters: dict, sort_by: str, sort_type: int, page: int, limit: int) -> List[dict]:
    return [
        {"$match": filters},
        *join_one(USER, "owner", "ownerDetails"),
        {"$sort": {sort_by: sort_type, "_id": sort_type}},
        *page_stages(page, limit),
        {
            "$project": {
                "videoFile": 1, "thumbnail": 1, "title": 1, "description": 1, "duration": 1,
                "views": 1, "isPublished": 1, "owner": 1, "createdAt": 1, "updatedAt": 1,
                **{f"ownerDetails.{f}": 1 for f in CHANNEL_FIELDS},
            }
        },
    ]


def liked_content_pipeline(user_id: ObjectId, kind: LikeKind) -> List[dict]:
    source = VIDEO if kind is LikeKind.VIDEO else COMMENT
    return [
        {"$match": {"likedBy": user_id, "kind": kind.value}},
        {"$sort": {"createdAt": -1, "_id": -1}},
        *join_one(source, "target", "resolved", keep_missing=True),
        {
            "$project": {
                "likedBy": 1, "kind": 1, "target": 1, "createdAt": 1,
                "resolved._id": 1,
                **{f"resolved.{f}": 1 for f in LIKED_FIELDS[kind].values()},
            }
        },
    ]


def subscription_listing_pipeline(match_field: str, user_id: ObjectId, join_field: str) -> List[dict]:
    return [
        {"$match": {match_field: user_id}},
        {"$sort": {"createdAt": -1, "_id": -1}},
        *join_one(USER, join_field, "resolved", keep_missing=True),
        {
            "$project": {
                "subscriber": 1, "channel": 1, "createdAt": 1,
                "resolved._id": 1,
                **{f"resolved.{f}": 1 for f in CHANNEL_FIELDS},
            }
        },
    ]


def channel_profile_pipeline(username: str) -> List[dict]:
    return [
        {"$match": {"username": username}},
        {"$lookup": {"from": SUBSCRIPTION, "localField": "_id", "foreignField": "channel", "as": "subscribers"}},
        {"$lookup": {"from": SUBSCRIPTION, "localField": "_id", "foreignField": "subscriber", "as": "subscribedTo"}},
        {"$project": {"password": 0, "refreshToken": 0}},
    ]


def first_count(rows: List[dict]) -> int:
    return rows[0]["count"] if rows else 0


def _rename(doc: Optional[dict], fields: Dict[str, str]) -> Optional[dict]:
    if not doc:
        return None
    out = {"_id": doc["_id"]}
    for name, source in fields.items():
        if source in doc:
            out[name] = doc[source]
    return out


class AggregationEngine:
    def __init__(self, store: Store, max_page_size: int = 100):
        self.store = store
        self.max_page_size = max_page_size

    def _aggregate(self, collection: Collection, pipeline: List[dict], report: str) -> List[dict]:
        try:
            return list(collection.aggregate(pipeline))
        except PyMongoError as exc:
            logger.exception("Aggregation for %s failed", report)
            raise DependencyError(f"Error fetching {report}") from exc

    def _check_page(self, page: int, limit: int) -> None:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > self.max_page_size:
            raise ValidationError(f"limit must be between 1 and {self.max_page_size}")

    def comment_feed(self, video_id: ObjectId, page: int = 1, limit: int = 10) -> dict:
        """One page of a video's comments, newest first, with author display fields."""
        self._check_page(page, limit)
        rows = self._aggregate(
            self.store.comments.collection, comment_feed_pipeline(video_id, page, limit), "comments"
        )
        facet = rows[0] if rows else {}
        total = first_count(facet.get("total", []))
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "docs": facet.get("docs", []),
            "totalDocs": total,
            "limit": limit,
            "page": page,
            "totalPages": total_pages,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        }

    def channel_analytics(self, channel_id: ObjectId) -> dict:
        rows = self._aggregate(
            self.store.videos.collection, channel_analytics_pipeline(channel_id), "channel analytics"
        )
        facet = rows[0] if rows else {}
        return {
            "totalVideos": first_count(facet.get("totalVideos", [])),
            "totalLikes": first_count(facet.get("totalLikes", [])),
            "totalSubscribers": first_count(facet.get("totalSubscribers", [])),
        }

    def channel_videos(self, channel_id: ObjectId, include_unpublished: bool = False) -> List[dict]:
        """A channel's videos, newest first; drafts only when the channel itself is asking."""
        filters = {"owner": channel_id}
        if not include_unpublished:
            filters["isPublished"] = True
        try:
            return list(self.store.videos.collection.find(filters).sort([("createdAt", -1), ("_id", -1)]))
        except PyMongoError as exc:
            logger.exception("Listing videos of channel %s failed", channel_id)
            raise DependencyError("Error fetching channel videos") from exc

    def video_feed(
        self,
        page: int = 1,
        limit: int = 10,
        query: Optional[str] = None,
        sort_by: str = "createdAt",
        sort_type: int = -1,
        owner_id: Optional[ObjectId] = None,
        include_unpublished: bool = False,
    ) -> List[dict]:
        self._check_page(page, limit)
        if sort_by not in VIDEO_SORT_FIELDS:
            raise ValidationError(f"sortBy must be one of {', '.join(VIDEO_SORT_FIELDS)}")
        if sort_type not in (1, -1):
            raise ValidationError("sortType must be 1 or -1")
        filters: dict = {}
        if query:
            filters["title"] = {"$regex": re.escape(query), "$options": "i"}
        if owner_id is not None:
            filters["owner"] = owner_id
        if not include_unpublished:
            filters["isPublished"] = True
        return self._aggregate(
            self.store.videos.collection,
            video_feed_pipeline(filters, sort_by, sort_type, page, limit),
            "videos",
        )

    def liked_content(self, user_id: ObjectId, kind: LikeKind) -> List[dict]:
        """Likes of one kind by ``user_id``; a like whose target is gone carries ``None``."""
        rows = self._aggregate(
            self.store.likes.collection, liked_content_pipeline(user_id, kind), f"liked {kind.value}s"
        )
        fields = LIKED_FIELDS[kind]
        return [
            {
                "_id": row["_id"],
                "likedBy": row["likedBy"],
                "kind": row["kind"],
                "createdAt": row.get("createdAt"),
                kind.value: _rename(row.get("resolved"), fields),
            }
            for row in rows
        ]

    def _subscription_listing(self, match_field: str, user_id: ObjectId, join_field: str, report: str) -> List[dict]:
        if not self.store.users.exists(user_id):
            raise NotFoundError(f"{match_field.capitalize()} not found")
        rows = self._aggregate(
            self.store.subscriptions.collection,
            subscription_listing_pipeline(match_field, user_id, join_field),
            report,
        )
        fields = {f: f for f in CHANNEL_FIELDS}
        return [
            {
                "_id": row["_id"],
                match_field: row[match_field],
                "createdAt": row.get("createdAt"),
                join_field: _rename(row.get("resolved"), fields),
            }
            for row in rows
        ]

    def subscribed_channels(self, subscriber_id: ObjectId) -> List[dict]:
        """Channels ``subscriber_id`` follows."""
        return self._subscription_listing("subscriber", subscriber_id, "channel", "subscriptions")

    def channel_subscribers(self, channel_id: ObjectId) -> List[dict]:
        """Users following ``channel_id``."""
        return self._subscription_listing("channel", channel_id, "subscriber", "subscribers")

    def channel_profile(self, username: str, viewer_id: Optional[ObjectId] = None) -> dict:
        username = username.strip().lower()
        if not username:
            raise ValidationError("Username is missing")
        rows = self._aggregate(self.store.users.collection, channel_profile_pipeline(username), "channel profile")
        if not rows:
            raise NotFoundError("Channel does not exist")
        profile = rows[0]
        subscribers = profile.pop("subscribers", [])
        subscribed_to = profile.pop("subscribedTo", [])
        profile["subscribersCount"] = len(subscribers)
        profile["channelsSubscribedToCount"] = len(subscribed_to)
        profile["isSubscribed"] = viewer_id is not None and any(
            s.get("subscriber") == viewer_id for s in subscribers
        )
        return profile
