"""Field rules for untrusted string input (seed, user, session id, payload data)."""

from dataclasses import dataclass
import re
from typing import Any, Dict, Optional, Pattern

from shelly.core.sessions import DISCONNECTED, SessionRegistry
from shelly.errors import StateError, ValidationError
from shelly.plugins.pipeline import PluginDescriptor

MAX_DATA_SIZE = 1024 * 1024

_TYPES = {"string": str, "number": (int, float), "boolean": bool, "object": dict}


@dataclass
class ValidationRule:
    type: str = "string"
    required: bool = True
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[Pattern] = None


def default_rules() -> Dict[str, ValidationRule]:
    return {
        # Seeds are opaque; any characters are allowed
        "seed": ValidationRule(min_length=1, max_length=1024),
        # Local account names may carry a domain (alice@corp.example, CORP\alice)
        "user": ValidationRule(
            min_length=1,
            max_length=256,
            pattern=re.compile(r"^\S+$"),
        ),
        "session_id": ValidationRule(min_length=1, max_length=64),
        "data": ValidationRule(max_length=MAX_DATA_SIZE),
    }


class ValidationPlugin:
    name = "validation"
    version = "1.0.0"

    def __init__(self, registry: Optional[SessionRegistry] = None, **_context: Any):
        self.registry = registry
        self.rules: Dict[str, ValidationRule] = default_rules()

    def descriptor(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            version=self.version,
            hook_bindings=[
                ("validate:input", self.validate_input),
                ("validate:session", self.validate_session),
                ("validate:data", self.validate_data),
            ],
        )

    def check(self, field: str, value: Any) -> Any:
        """
        Apply the rule for `field` to `value`. Fields without a rule pass.

        Raises:
            ValidationError: Describing the first violated constraint
        """
        rule = self.rules.get(field)
        if rule is None:
            return value

        if value is None or value == "":
            if rule.required:
                raise ValidationError(f"{field} is required")
            return value

        expected = _TYPES.get(rule.type)
        if expected is not None and not isinstance(value, expected):
            raise ValidationError(f"{field} must be {rule.type}, got {type(value).__name__}")
        if rule.min_length is not None and len(value) < rule.min_length:
            raise ValidationError(f"{field} minimum length is {rule.min_length}")
        if rule.max_length is not None and len(value) > rule.max_length:
            raise ValidationError(f"{field} maximum length is {rule.max_length}")
        if rule.pattern is not None and not rule.pattern.match(value):
            raise ValidationError(f"{field} contains invalid characters")
        return value

    def check_fields(self, **fields: Any) -> None:
        for field, value in fields.items():
            self.check(field, value)

    def add_rule(self, field: str, rule: ValidationRule) -> None:
        self.rules[field] = rule

    def get_rule(self, field: str) -> Optional[ValidationRule]:
        return self.rules.get(field)

    async def validate_input(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.check(data.get("field"), data.get("value"))
        return data

    async def validate_session(self, data: Dict[str, Any]) -> Dict[str, Any]:
        session_id = data.get("sessionId")
        record = self.registry.get(session_id) if self.registry else None
        if record is None:
            raise StateError(f"Session {session_id} not found")
        if record.state == DISCONNECTED:
            raise StateError(f"Session {session_id} is disconnected")
        return data

    async def validate_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        content = data.get("content")
        if not isinstance(content, str):
            raise ValidationError("Data content must be string")
        if len(content) > MAX_DATA_SIZE:
            raise ValidationError("Data exceeds maximum size")
        return data
