"""JSON schema helpers for structured model output."""

from typing import Any


def recursively_add_additional_properties(schema: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of schema prepared for strict structured output.

    Every object schema gets ``additionalProperties: false`` unless it is
    already set, and a ``required`` list naming all of its properties. Nested
    objects and array items are processed the same way. The input is not
    modified.

    Args:
        schema: A JSON schema fragment.

    Returns:
        The processed schema.
    """
    result = dict(schema)

    if result.get("type") == "object":
        if "additionalProperties" not in result:
            result["additionalProperties"] = False

        properties = result.get("properties")
        if properties:
            properties = dict(properties)
            result["properties"] = properties

            if "required" not in result:
                result["required"] = list(properties.keys())

            for key, prop in properties.items():
                if isinstance(prop, dict):
                    processed = recursively_add_additional_properties(prop)
                    # Nested objects always require every property
                    if processed.get("type") == "object" and processed.get("properties"):
                        processed["required"] = list(processed["properties"].keys())
                    properties[key] = processed

    items = result.get("items")
    if result.get("type") == "array" and isinstance(items, dict):
        processed_items = recursively_add_additional_properties(items)
        if processed_items.get("type") == "object" and processed_items.get("properties"):
            processed_items["required"] = list(processed_items["properties"].keys())
        result["items"] = processed_items

    return result


def build_response_format(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    """
    Build an OpenAI ``response_format`` payload from a call-ai schema.

    Args:
        name: Schema name sent to the provider.
        schema: Either a full object schema or a bare ``properties`` mapping
            with optional ``required`` and ``additionalProperties`` keys.

    Returns:
        Dict suitable for the ``response_format`` request field.
    """
    object_schema: dict[str, Any] = {
        "type": "object",
        "properties": schema.get("properties", {}),
    }
    if "required" in schema:
        object_schema["required"] = schema["required"]
    if "additionalProperties" in schema:
        object_schema["additionalProperties"] = schema["additionalProperties"]

    return {
        "type": "json_schema",
        "json_schema": {
            "name": name or "result",
            "strict": True,
            "schema": recursively_add_additional_properties(object_schema),
        },
    }
