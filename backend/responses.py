from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import jsonify

from .errors import InvalidPayload


def envelope(status: str, status_code: int, message: str, data=None):
    return {
        "status": status,
        "statusCode": status_code,
        "message": message,
        "data": data,
    }


def success(data=None, message: str = "Success", status_code: int = 200):
    body = envelope("success", status_code, message, data)
    return jsonify(body), status_code


def failure(message: str, status_code: int = 400, data=None):
    body = envelope("error", status_code, message, data)
    return jsonify(body), status_code


def parse_object_id(value, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise InvalidPayload(f"Please enter a valid {label}")


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def stringify_id(value) -> Optional[str]:
    if value is None:
        return None
    return str(value)
