import dataclasses
import datetime
import dotenv
import enum
import json
import os
import pydantic
import typing
import uuid


def serialize(obj: typing.Any) -> typing.Any:
    def serialize_inner(o: typing.Any):
        if isinstance(o, (datetime.datetime, datetime.date)):
            return o.isoformat()
        elif o is None:
            return None
        elif isinstance(o, (int, float, str, bool)):
            return o
        elif isinstance(o, uuid.UUID):
            return str(o)
        elif isinstance(o, enum.Enum):
            return o.value
        elif dataclasses.is_dataclass(o) and not isinstance(o, type):
            return serialize_inner(dataclasses.asdict(o))
        elif isinstance(o, bytes):
            return o.decode("utf-8", errors="replace")
        elif isinstance(o, pydantic.BaseModel):
            return o.model_dump(by_alias=True)
        elif isinstance(o, (tuple, set, frozenset, list)):
            return [serialize_inner(item) for item in o]
        elif isinstance(o, dict):
            return {str(k): serialize_inner(v) for k, v in o.items()}

        return str(o)

    return serialize_inner(obj)


def json_dumps(data: typing.Any) -> str:
    """Compact JSON, the same separators a JavaScript producer would emit."""
    return json.dumps(serialize(data), separators=(",", ":"), ensure_ascii=False)


def try_parse_json(value: typing.Any) -> typing.Any:
    """Decode a JSON string once.

    Objects, arrays and strings are returned decoded. Anything else, including
    text that only parses to a number, boolean or null, is returned as-is.
    """
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value
    if isinstance(parsed, (dict, list, str)):
        return parsed
    return value


def from_env(key: str) -> str | None:
    if val := os.getenv(key):
        return val
    dotenv_path = dotenv.find_dotenv(usecwd=True)
    # use DotEnv directly so we can set verbose to False
    return dotenv.main.DotEnv(dotenv_path, verbose=False, encoding="utf-8").get(key)


def format_id(id_value: str | int | uuid.UUID) -> str:
    """Format trace/span ID to a UUID string, or return valid UUID strings as-is.

    Args:
        id_value: The ID in various formats (UUID, int, or valid UUID string)

    Returns:
        str: UUID string representation

    Raises:
        ValueError: If id_value cannot be converted to a valid UUID
    """
    if isinstance(id_value, uuid.UUID):
        return str(id_value)
    elif isinstance(id_value, int):
        return str(uuid.UUID(int=id_value))
    elif isinstance(id_value, str):
        uuid.UUID(id_value)
        return id_value
    else:
        raise ValueError(f"Invalid ID type: {type(id_value)}")
