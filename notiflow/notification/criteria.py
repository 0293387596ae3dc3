"""Recipient criteria matching against the user directory."""

import ast
from typing import Any

from simpleeval import NameNotDefined, simple_eval

from notiflow.core.errors import ValidationFailed
from notiflow.core.logging import get_logger
from notiflow.models.notification import UserContact
from notiflow.models.schedule import RecipientCriteria

logger = get_logger(__name__)


class CriteriaEvaluator:
    """Safe evaluation of recipient criteria.

    ``attributes`` must match exactly. ``expression`` is a boolean expression
    over the user's attributes plus ``user_id``, ``email`` and ``name``, e.g.
    ``role == 'admin' and 'beta' in groups``.
    """

    ALLOWED_FUNCTIONS = {
        "abs": abs,
        "min": min,
        "max": max,
        "len": len,
        "int": int,
        "float": float,
        "str": str,
        "bool": bool,
    }

    def validate(self, criteria: RecipientCriteria) -> None:
        """Reject expressions that do not parse.

        Raises:
            ValidationFailed: If the expression has a syntax error
        """
        if not criteria.expression:
            return
        try:
            ast.parse(criteria.expression, mode="eval")
        except SyntaxError as e:
            raise ValidationFailed(f"Invalid recipient expression: {criteria.expression}") from e

    def matches(self, criteria: RecipientCriteria, user: UserContact) -> bool:
        """Whether ``user`` satisfies ``criteria``.

        A name the user has no value for makes the expression false.

        Raises:
            ValidationFailed: If the expression cannot be evaluated
        """
        context = self._context(user)
        for key, expected in criteria.attributes.items():
            if context.get(key) != expected:
                return False

        if not criteria.expression:
            return True

        try:
            result = simple_eval(criteria.expression, names=context, functions=self.ALLOWED_FUNCTIONS)
        except NameNotDefined:
            return False
        except Exception as e:
            logger.error("Recipient expression error", expression=criteria.expression, error=str(e))
            raise ValidationFailed(f"Invalid recipient expression: {criteria.expression}") from e
        return bool(result)

    def select(self, criteria: RecipientCriteria, users: list[UserContact]) -> list[str]:
        """Ids of matching users, in directory order."""
        self.validate(criteria)
        return [user.user_id for user in users if self.matches(criteria, user)]

    @staticmethod
    def _context(user: UserContact) -> dict[str, Any]:
        return {
            **user.attributes,
            "user_id": user.user_id,
            "email": user.email,
            "name": user.name,
        }
