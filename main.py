import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregations import AggregationEngine
from config import settings
from database import connect, ensure_indexes, objid
from errors import (
    ApiError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from repositories import Store, get_store
from responses import respond
from schemas import (
    ChangePasswordRequest,
    Comment,
    CommentRequest,
    LikeKind,
    LikeTarget,
    LoginRequest,
    RefreshTokenRequest,
    RegisterForm,
    UpdateAccountRequest,
    User,
    Video,
    build,
)
from security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
    hash_password,
    verify_password,
)
from storage import LocalUploader, Uploader, get_uploader, upload_file, upload_files

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    client = connect(settings)
    db = client[settings.database_name]
    ensure_indexes(db)
    application.state.store = Store(db)
    application.state.uploader = LocalUploader(settings.upload_dir, settings.public_url_prefix)
    logger.info("App starting up")
    yield
    client.close()
    logger.info("App shutting down")


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Uploaded media is served back under /static
os.makedirs(settings.upload_dir, exist_ok=True)
app.mount(settings.public_url_prefix, StaticFiles(directory=settings.upload_dir), name="static")


# -------------------- Error handling --------------------

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    message = details[0]["message"] if details else "Invalid request"
    return JSONResponse(status_code=400, content=ValidationError(message, details).to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = ApiError(str(exc.detail), status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=error.to_dict())


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=409, content=ConflictError().to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=ApiError("Database error").to_dict())


# -------------------- Helpers --------------------

def get_engine(store: Store = Depends(get_store)) -> AggregationEngine:
    return AggregationEngine(store, max_page_size=settings.max_page_size)


def ensure_owner(doc: dict, user: dict, action: str, noun: str) -> None:
    if doc.get("owner") != user["_id"]:
        raise AuthorizationError(f"You are not authorized to {action} this {noun}")


def visible_video(store: Store, video_id, user: dict) -> dict:
    """Fetch a video the caller may see; unpublished videos exist only for their owner."""
    video = store.videos.get(video_id)
    if not video or (not video.get("isPublished", True) and video["owner"] != user["_id"]):
        raise NotFoundError("Video not found")
    return video


def required(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(message)
    return value.strip()


def with_tokens(response: JSONResponse, access_token: Optional[str], refresh_token: Optional[str]) -> JSONResponse:
    if access_token is None:
        response.delete_cookie("accessToken")
        response.delete_cookie("refreshToken")
        return response
    secure = settings.is_production
    response.set_cookie("accessToken", access_token, httponly=True, secure=secure, samesite="lax")
    response.set_cookie("refreshToken", refresh_token, httponly=True, secure=secure, samesite="lax")
    return response


def issue_tokens(store: Store, user: dict):
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    store.users.set_refresh_token(user["_id"], refresh_token)
    return access_token, refresh_token


# -------------------- Basic Routes --------------------

@app.get("/")
def read_root():
    return {"message": "Video Sharing Backend is running"}


@app.get("/test")
def test_database(store: Store = Depends(get_store)):
    info = {
        "backend": "running",
        "database_connected": False,
        "collections": []
    }
    try:
        info["collections"] = store.collection_names()
        info["database_connected"] = True
    except PyMongoError as e:
        info["error"] = str(e)
    return info


# -------------------- Users --------------------

@app.post("/users/register")
def register(
    fullName: str = Form(...),
    email: str = Form(...),
    username: str = Form(...),
    password: str = Form(...),
    avatar: UploadFile = File(...),
    coverImage: Optional[UploadFile] = File(None),
    store: Store = Depends(get_store),
    uploader: Uploader = Depends(get_uploader),
):
    required(password, "Password is required")
    form = build(
        RegisterForm,
        fullName=required(fullName, "Full name is required"),
        email=required(email, "Email is required"),
        username=required(username, "Username is required"),
        password=password,
    )
    if store.users.find_by_login(username=form.username, email=form.email):
        raise ConflictError("User with email or username already exists")

    files = [avatar]
    if coverImage is not None and coverImage.filename:
        files.append(coverImage)
    urls = upload_files(uploader, files, settings)
    avatar_url = urls[0]
    cover_url = urls[1] if len(urls) > 1 else None

    user = store.users.create(build(
        User,
        username=form.username,
        email=form.email,
        fullName=form.fullName,
        avatar=avatar_url,
        coverImage=cover_url,
        password=hash_password(form.password),
    ))
    logger.info("Registered user %s", user["username"])
    return respond(201, user, "User registered successfully")


@app.post("/users/login")
def login(payload: LoginRequest, store: Store = Depends(get_store)):
    if not payload.username and not payload.email:
        raise ValidationError("Username or email is required")
    user = store.users.find_by_login(username=payload.username, email=payload.email)
    if not user:
        raise NotFoundError("User does not exist")
    if not verify_password(payload.password, user.get("password", "")):
        raise UnauthenticatedError("Invalid user credentials")

    access_token, refresh_token = issue_tokens(store, user)
    public = store.users.get_public(user["_id"])
    logger.info("User %s logged in", public["username"])
    response = respond(
        200,
        {"user": public, "accessToken": access_token, "refreshToken": refresh_token},
        "User logged in successfully",
    )
    return with_tokens(response, access_token, refresh_token)


@app.post("/users/logout")
def logout(user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    store.users.set_refresh_token(user["_id"], None)
    return with_tokens(respond(200, {}, "User logged out"), None, None)


@app.post("/users/refresh-token")
def refresh_access_token(
    request: Request,
    payload: Optional[RefreshTokenRequest] = None,
    store: Store = Depends(get_store),
):
    incoming = request.cookies.get("refreshToken") or (payload.refreshToken if payload else None)
    if not incoming:
        raise UnauthenticatedError("Unauthorized request")
    user = store.users.get(decode_token(incoming, settings.refresh_token_secret))
    if not user:
        raise UnauthenticatedError("Invalid refresh token")
    if user.get("refreshToken") != incoming:
        raise UnauthenticatedError("Refresh token is expired or used")

    access_token, refresh_token = issue_tokens(store, user)
    response = respond(
        200,
        {"accessToken": access_token, "refreshToken": refresh_token},
        "Access token refreshed",
    )
    return with_tokens(response, access_token, refresh_token)


@app.post("/users/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    stored = store.users.get(user["_id"])
    if not verify_password(payload.oldPassword, stored.get("password", "")):
        raise ValidationError("Invalid old password")
    store.users.update(user["_id"], {"password": hash_password(payload.newPassword)})
    return respond(200, {}, "Password changed successfully")


@app.get("/users/current-user")
def current_user(user: dict = Depends(get_current_user)):
    return respond(200, user, "User fetched successfully")


@app.patch("/users/update-account")
def update_account(
    payload: UpdateAccountRequest,
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    changes = {}
    if payload.fullName is not None and payload.fullName.strip():
        changes["fullName"] = payload.fullName.strip()
    if payload.email is not None:
        changes["email"] = payload.email.lower()
    if not changes:
        raise ValidationError("Full name or email is required")
    updated = store.users.update_public(user["_id"], changes)
    return respond(200, updated, "Account details updated successfully")


@app.patch("/users/avatar")
def update_avatar(
    avatar: UploadFile = File(...),
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
    uploader: Uploader = Depends(get_uploader),
):
    url = upload_file(uploader, avatar, settings)
    updated = store.users.update_public(user["_id"], {"avatar": url})
    return respond(200, updated, "Avatar updated successfully")


@app.patch("/users/cover-image")
def update_cover_image(
    coverImage: UploadFile = File(...),
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
    uploader: Uploader = Depends(get_uploader),
):
    url = upload_file(uploader, coverImage, settings)
    updated = store.users.update_public(user["_id"], {"coverImage": url})
    return respond(200, updated, "Cover image updated successfully")


@app.get("/users/c/{username}")
def channel_profile(
    username: str,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    profile = engine.channel_profile(username, viewer_id=user["_id"])
    return respond(200, profile, "User channel fetched successfully")


# -------------------- Videos --------------------

@app.get("/videos")
def list_videos(
    page: int = 1,
    limit: int = settings.default_page_size,
    query: Optional[str] = None,
    sortBy: str = "createdAt",
    sortType: int = -1,
    userId: Optional[str] = None,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    owner_id = objid(userId, "user") if userId else None
    videos = engine.video_feed(
        page=page,
        limit=limit,
        query=query,
        sort_by=sortBy,
        sort_type=sortType,
        owner_id=owner_id,
        include_unpublished=owner_id is not None and owner_id == user["_id"],
    )
    return respond(200, videos, "Videos fetched successfully")


@app.post("/videos")
def publish_video(
    title: str = Form(...),
    description: str = Form(...),
    duration: float = Form(...),
    videoFile: UploadFile = File(...),
    thumbnail: UploadFile = File(...),
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
    uploader: Uploader = Depends(get_uploader),
):
    title = required(title, "Title is required")
    description = required(description, "Description is required")
    if duration < 0:
        raise ValidationError("Duration must not be negative")

    video_url, thumbnail_url = upload_files(uploader, [videoFile, thumbnail], settings)

    video = store.videos.create(build(
        Video,
        owner=user["_id"],
        videoFile=video_url,
        thumbnail=thumbnail_url,
        title=title,
        description=description,
        duration=duration,
    ))
    logger.info("User %s published video %s", user["_id"], video["_id"])
    return respond(201, video, "Video published successfully")


@app.get("/videos/{video_id}")
def get_video(video_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    v = visible_video(store, objid(video_id, "video"), user)
    v["ownerDetails"] = store.users.get(v["owner"], {"username": 1, "fullName": 1, "avatar": 1})
    return respond(200, v, "Video fetched successfully")


@app.patch("/videos/{video_id}")
def update_video(
    video_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    thumbnail: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
    uploader: Uploader = Depends(get_uploader),
):
    oid = objid(video_id, "video")
    video = store.videos.get(oid)
    if not video:
        raise NotFoundError("Video not found")
    ensure_owner(video, user, "update", "video")

    updates = {}
    if title and title.strip():
        updates["title"] = title.strip()
    if description and description.strip():
        updates["description"] = description.strip()
    if thumbnail is not None and thumbnail.filename:
        updates["thumbnail"] = upload_file(uploader, thumbnail, settings)
    if not updates:
        raise ValidationError("Nothing to update")

    return respond(200, store.videos.update(oid, updates), "Video updated successfully")


@app.delete("/videos/{video_id}")
def delete_video(video_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    oid = objid(video_id, "video")
    video = store.videos.get(oid)
    if not video:
        raise NotFoundError("Video not found")
    ensure_owner(video, user, "delete", "video")
    store.delete_video(oid)
    return respond(200, {}, "Video deleted successfully")


@app.patch("/videos/toggle/publish/{video_id}")
def toggle_publish_status(video_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    video = store.videos.get(objid(video_id, "video"))
    if not video:
        raise NotFoundError("Video not found")
    ensure_owner(video, user, "update", "video")
    return respond(200, store.videos.toggle_publish(video), "Video publish status updated")


# -------------------- Comments --------------------

@app.get("/videos/{video_id}/comments")
def list_comments(
    video_id: str,
    page: int = 1,
    limit: int = settings.default_page_size,
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
    engine: AggregationEngine = Depends(get_engine),
):
    oid = visible_video(store, objid(video_id, "video"), user)["_id"]
    comments = engine.comment_feed(oid, page=page, limit=limit)
    message = "Comments fetched successfully" if comments["docs"] else "No comments found"
    return respond(200, comments, message)


@app.post("/videos/{video_id}/comments")
def add_comment(
    video_id: str,
    payload: CommentRequest,
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    oid = visible_video(store, objid(video_id, "video"), user)["_id"]
    comment = store.comments.create(build(Comment, video=oid, owner=user["_id"], content=payload.content))
    comment["owner"] = {"_id": user["_id"], "username": user.get("username"), "avatar": user.get("avatar")}
    return respond(201, comment, "Comment added successfully")


@app.patch("/comments/{comment_id}")
def update_comment(
    comment_id: str,
    payload: CommentRequest,
    user: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    oid = objid(comment_id, "comment")
    comment = store.comments.get(oid)
    if not comment:
        raise NotFoundError("Comment not found")
    ensure_owner(comment, user, "update", "comment")
    return respond(200, store.comments.update(oid, {"content": payload.content}), "Comment updated successfully")


@app.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    oid = objid(comment_id, "comment")
    comment = store.comments.get(oid)
    if not comment:
        raise NotFoundError("Comment not found")
    ensure_owner(comment, user, "delete", "comment")
    store.delete_comment(oid)
    return respond(200, None, "Comment deleted successfully")


# -------------------- Likes --------------------

def toggle_like(target: LikeTarget, user: dict, store: Store):
    label = target.kind.value.capitalize()
    if target.kind is LikeKind.VIDEO:
        visible_video(store, target.id, user)
    else:
        comment = store.comments.get(target.id)
        if not comment:
            raise NotFoundError(f"{label} not found")
        visible_video(store, comment["video"], user)
    like = store.likes.toggle(user["_id"], target)
    if like is None:
        logger.info("User %s unliked %s %s", user["_id"], target.kind.value, target.id)
        return respond(200, None, f"{label} unliked successfully")
    logger.info("User %s liked %s %s", user["_id"], target.kind.value, target.id)
    return respond(201, like, f"{label} liked successfully")


@app.post("/likes/toggle/video/{video_id}")
def toggle_video_like(video_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    return toggle_like(LikeTarget.video(objid(video_id, "video")), user, store)


@app.post("/likes/toggle/comment/{comment_id}")
def toggle_comment_like(comment_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    return toggle_like(LikeTarget.comment(objid(comment_id, "comment")), user, store)


@app.get("/likes/videos")
def liked_videos(user: dict = Depends(get_current_user), engine: AggregationEngine = Depends(get_engine)):
    return respond(200, engine.liked_content(user["_id"], LikeKind.VIDEO), "Liked videos fetched successfully")


@app.get("/likes/comments")
def liked_comments(user: dict = Depends(get_current_user), engine: AggregationEngine = Depends(get_engine)):
    return respond(200, engine.liked_content(user["_id"], LikeKind.COMMENT), "Liked comments fetched successfully")


# -------------------- Subscriptions --------------------

@app.post("/subscriptions/subscribe/{channel_id}")
def toggle_subscription(channel_id: str, user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    oid = objid(channel_id, "channel")
    if oid == user["_id"]:
        raise ValidationError("Cannot subscribe to yourself")
    if not store.users.exists(oid):
        raise NotFoundError("Channel not found")
    subscription = store.subscriptions.toggle(user["_id"], oid)
    if subscription is None:
        logger.info("User %s unsubscribed from %s", user["_id"], oid)
        return respond(200, None, "Unsubscribed successfully")
    logger.info("User %s subscribed to %s", user["_id"], oid)
    return respond(201, subscription, "Subscribed successfully")


@app.get("/subscriptions/subscribe/{subscriber_id}")
def subscribed_channels(
    subscriber_id: str,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    channels = engine.subscribed_channels(objid(subscriber_id, "subscriber"))
    message = "Fetched subscribed channels successfully" if channels else "No channels subscribed"
    return respond(200, channels, message)


@app.get("/subscriptions/subscribers/{channel_id}")
def channel_subscribers(
    channel_id: str,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    subscribers = engine.channel_subscribers(objid(channel_id, "channel"))
    message = "Fetched channel subscribers successfully" if subscribers else "No subscribers found"
    return respond(200, subscribers, message)


@app.get("/subscriptions/subscriptions")
def my_subscriptions(user: dict = Depends(get_current_user), engine: AggregationEngine = Depends(get_engine)):
    return respond(200, engine.subscribed_channels(user["_id"]), "User subscriptions fetched successfully")


# -------------------- Dashboard --------------------

@app.get("/dashboard/channel/{channel_id}/videos")
def dashboard_channel_videos(
    channel_id: str,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    oid = objid(channel_id, "channel")
    videos = engine.channel_videos(oid, include_unpublished=oid == user["_id"])
    message = "Videos fetched successfully" if videos else "No videos found for this channel"
    return respond(200, videos, message)


@app.get("/dashboard/channel/{channel_id}/analytics")
def dashboard_channel_analytics(
    channel_id: str,
    user: dict = Depends(get_current_user),
    engine: AggregationEngine = Depends(get_engine),
):
    analytics = engine.channel_analytics(objid(channel_id, "channel"))
    return respond(200, analytics, "Channel analytics fetched successfully")


@app.get("/dashboard/user/liked-videos")
def dashboard_liked_videos(user: dict = Depends(get_current_user), engine: AggregationEngine = Depends(get_engine)):
    return respond(200, engine.liked_content(user["_id"], LikeKind.VIDEO), "Liked videos fetched successfully")


@app.get("/dashboard/user/subscriptions")
def dashboard_subscriptions(user: dict = Depends(get_current_user), engine: AggregationEngine = Depends(get_engine)):
    return respond(200, engine.subscribed_channels(user["_id"]), "User subscriptions fetched successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
