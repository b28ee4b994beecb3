"""Unified API conversion system - snake_case <-> camelCase key conversion."""

import re
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any


def snake_to_camel(snake_str: str) -> str:
    """Convert snake_case to camelCase."""
    components = snake_str.split("_")
    return components[0] + "".join(word.capitalize() for word in components[1:])


def camel_to_snake(camel_str: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", camel_str)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def convert_keys_to_camel_case(data: Any) -> Any:
    """Recursively convert all dict keys from snake_case to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(key): convert_keys_to_camel_case(value) for key, value in data.items()}
    if isinstance(data, list):
        return [convert_keys_to_camel_case(item) for item in data]
    if is_dataclass(data) and not isinstance(data, type):
        # Convert dataclass instance to dict, then convert keys
        return convert_keys_to_camel_case(asdict(data))
    if isinstance(data, Enum):
        return data.value
    return data


def convert_keys_to_snake_case(data: Any) -> Any:
    """Recursively convert all dict keys from camelCase to snake_case."""
    if isinstance(data, dict):
        return {camel_to_snake(key): convert_keys_to_snake_case(value) for key, value in data.items()}
    if isinstance(data, list):
        return [convert_keys_to_snake_case(item) for item in data]
    return data
