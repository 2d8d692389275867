"""
Pytest configuration and shared fixtures.

Every test gets a fresh mongomock database wrapped in a ``Store`` with the
production indexes applied. The ``client`` fixture overrides the store,
uploader and current-user dependencies of the FastAPI app.
"""
import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Keep uploads out of the working tree; must happen before config is imported.
_MEDIA_ROOT = tempfile.mkdtemp(prefix="videotube-tests-")
os.environ.setdefault("UPLOAD_DIR", _MEDIA_ROOT)
os.environ.setdefault("TEMP_DIR", os.path.join(_MEDIA_ROOT, "temp"))

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes
from errors import UploadError
from main import app
from repositories import Store, get_store
from schemas import Comment, User, Video
from security import get_current_user
from storage import Uploader, discard, get_uploader

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeUploader(Uploader):
    """Accepts every file and hands back a predictable URL."""

    def __init__(self):
        self.uploaded = []

    def upload(self, local_path: str) -> str:
        name = os.path.basename(local_path)
        self.uploaded.append(name)
        discard(local_path)
        return f"http://cdn.test/{name}"


class FailingUploader(Uploader):
    def upload(self, local_path: str) -> str:
        discard(local_path)
        raise UploadError("Error uploading file")


@pytest.fixture
def store():
    db = mongomock.MongoClient()["videotube_test"]
    ensure_indexes(db)
    return Store(db)


@pytest.fixture
def make_user(store):
    counter = itertools.count(1)

    def _make(username=None, **extra):
        username = username or f"user{next(counter)}"
        return store.users.create(User(
            username=username,
            email=f"{username}@example.com",
            fullName=f"{username.title()} Example",
            avatar=f"http://cdn.test/{username}.png",
            password="not-a-real-hash",
            **extra,
        ))

    return _make


@pytest.fixture
def make_video(store):
    counter = itertools.count(1)

    def _make(owner, created_at=None, **extra):
        n = next(counter)
        fields = {
            "owner": owner["_id"],
            "videoFile": f"http://cdn.test/video{n}.mp4",
            "thumbnail": f"http://cdn.test/thumb{n}.png",
            "title": f"Video {n}",
            "description": f"Description {n}",
            "duration": 60.0 + n,
            **extra,
        }
        video = store.videos.create(Video(**fields))
        if created_at is not None:
            store.videos.collection.update_one({"_id": video["_id"]}, {"$set": {"createdAt": created_at}})
            video["createdAt"] = created_at
        return video

    return _make


@pytest.fixture
def make_comment(store):
    counter = itertools.count(1)

    def _make(video, owner, content=None, created_at=None):
        n = next(counter)
        comment = store.comments.create(Comment(
            video=video["_id"], owner=owner["_id"], content=content or f"Comment {n}"
        ))
        created_at = created_at or BASE_TIME + timedelta(minutes=n)
        store.comments.collection.update_one({"_id": comment["_id"]}, {"$set": {"createdAt": created_at}})
        comment["createdAt"] = created_at
        return comment

    return _make


@pytest.fixture
def current_user(make_user):
    return make_user("viewer")


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def anonymous_client(store, uploader):
    """Client without an authenticated identity."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_uploader] = lambda: uploader

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def client(anonymous_client, current_user):
    """Client authenticated as ``current_user``."""
    app.dependency_overrides[get_current_user] = lambda: current_user
    return anonymous_client


@pytest.fixture
def login_as():
    """Switch the authenticated identity of the test client."""
    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user
    return _login
