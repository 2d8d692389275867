from datetime import datetime
from typing import Any

from bson import ObjectId
from fastapi.responses import JSONResponse


def to_str_id(doc):
    """Make a stored document JSON friendly.

    ``_id`` becomes ``id``, ObjectIds become strings and datetimes are
    rendered as ISO 8601, recursively through nested documents and lists.
    """
    if isinstance(doc, list):
        return [to_str_id(item) for item in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    d = {}
    for k, v in doc.items():
        if k == "_id":
            k = "id"
        d[k] = to_str_id(v)
    return d


class ApiResponse:
    def __init__(self, status_code: int, data: Any, message: str = "Success"):
        self.status_code = status_code
        self.data = data
        self.message = message
        self.success = 200 <= status_code < 400

    def to_dict(self) -> dict:
        return {
            "statusCode": self.status_code,
            "data": to_str_id(self.data),
            "message": self.message,
            "success": self.success,
        }


def respond(status_code: int, data: Any, message: str = "Success") -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ApiResponse(status_code, data, message).to_dict())
