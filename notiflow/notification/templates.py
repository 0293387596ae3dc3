"""Versioned notification templates rendered with a sandboxed Jinja2 environment."""

from typing import Any

import jinja2
from jinja2 import BaseLoader, StrictUndefined, meta
from jinja2.sandbox import SandboxedEnvironment, SecurityError

from notiflow.core.errors import InvalidTemplateError, MissingVariableError, TemplateNotFound
from notiflow.core.logging import get_logger
from notiflow.models.common import utcnow
from notiflow.models.template import RenderedTemplate, Template, TemplateVariable, TemplateVersion
from notiflow.storage.template_store import TemplateStore

logger = get_logger(__name__)


class TemplateRegistry:
    """Creates, versions and renders templates.

    Title and body are Jinja2 expressions such as ``{{ actorName }} assigned
    you {{ taskTitle }}``. Every variable an expression references must be
    declared on the template, and required variables must be supplied (or
    have a default) at render time.
    """

    def __init__(self, store: TemplateStore | None = None):
        self._store = store or TemplateStore()
        self._env = SandboxedEnvironment(
            loader=BaseLoader(),
            undefined=StrictUndefined,
            autoescape=False,
        )

    # Expression handling

    def referenced_variables(self, expression: str) -> set[str]:
        """Names an expression reads from its context.

        Raises:
            InvalidTemplateError: If the expression does not parse
        """
        try:
            ast = self._env.parse(expression)
        except jinja2.TemplateSyntaxError as e:
            raise InvalidTemplateError(f"Invalid template expression: {e.message}") from e
        return meta.find_undeclared_variables(ast)

    def validate(self, title: str, body: str, variables: dict[str, TemplateVariable]) -> None:
        """Check both expressions parse and only use declared variables.

        Raises:
            InvalidTemplateError: On a syntax error
            MissingVariableError: On a reference to an undeclared variable
        """
        referenced = self.referenced_variables(title) | self.referenced_variables(body)
        undeclared = sorted(referenced - set(variables))
        if undeclared:
            raise MissingVariableError(
                f"Template references undeclared variables: {', '.join(undeclared)}",
                undeclared,
            )

    @staticmethod
    def resolve_variables(declared: dict[str, TemplateVariable], data: dict[str, Any]) -> dict[str, Any]:
        """Merge render data with declared defaults.

        Raises:
            MissingVariableError: Listing every required variable without a value
        """
        values = dict(data)
        missing = []
        for name, variable in declared.items():
            if values.get(name) is not None:
                continue
            if variable.default is not None:
                values[name] = variable.default
            elif variable.required:
                missing.append(name)
            else:
                values[name] = ""
        if missing:
            raise MissingVariableError(f"Missing required variables: {', '.join(missing)}", missing)
        return values

    def _render_expression(self, expression: str, values: dict[str, Any]) -> str:
        try:
            return self._env.from_string(expression).render(values)
        except jinja2.UndefinedError as e:
            raise MissingVariableError(f"Missing variable: {e.message}") from e
        except SecurityError as e:
            raise InvalidTemplateError(f"Unsafe template expression: {e}") from e
        except jinja2.TemplateSyntaxError as e:
            raise InvalidTemplateError(f"Invalid template expression: {e.message}") from e

    def render_content(
        self,
        title: str,
        body: str,
        variables: dict[str, TemplateVariable],
        data: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> RenderedTemplate:
        """Render arbitrary title/body content, e.g. an A/B variant.

        Args:
            title: Title expression
            body: Body expression
            variables: Declared variables used for defaults and required checks
            data: Render data
            metadata: Metadata copied onto the result

        Returns:
            Rendered title and body
        """
        values = self.resolve_variables(variables, data)
        return RenderedTemplate(
            title=self._render_expression(title, values),
            body=self._render_expression(body, values),
            metadata=dict(metadata or {}),
        )

    # Registry operations

    async def create_template(
        self,
        name: str,
        type: str,
        title: str,
        body: str,
        variables: dict[str, TemplateVariable] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str = "system",
    ) -> Template:
        """Validate and store a new template at version 1."""
        variables = variables or {}
        self.validate(title, body, variables)

        template = Template(
            name=name,
            type=type,
            title=title,
            body=body,
            variables=variables,
            metadata=metadata or {},
            created_by=created_by,
        )
        await self._store.save(template, TemplateVersion.from_template(template))
        logger.info("Template created", template_id=template.template_id, type=type)
        return template

    async def update_template(
        self,
        template_id: str,
        name: str | None = None,
        title: str | None = None,
        body: str | None = None,
        variables: dict[str, TemplateVariable] | None = None,
        metadata: dict[str, Any] | None = None,
        is_active: bool | None = None,
        updated_by: str | None = None,
    ) -> Template:
        """Update a template.

        A change to title, body or variables writes a new immutable version;
        name, metadata and activation changes update the template in place.

        Raises:
            TemplateNotFound: Unknown template
            InvalidTemplateError: New content does not parse
            MissingVariableError: New content uses undeclared variables
        """
        template = await self.get_template(template_id)

        new_title = title if title is not None else template.title
        new_body = body if body is not None else template.body
        new_variables = variables if variables is not None else template.variables
        content_changed = (
            new_title != template.title
            or new_body != template.body
            or new_variables != template.variables
        )

        if content_changed:
            self.validate(new_title, new_body, new_variables)

        updated = template.model_copy(
            update={
                "name": name if name is not None else template.name,
                "title": new_title,
                "body": new_body,
                "variables": new_variables,
                "metadata": metadata if metadata is not None else template.metadata,
                "is_active": is_active if is_active is not None else template.is_active,
                "updated_at": utcnow(),
            }
        )

        version = None
        if content_changed:
            updated.version = template.version + 1
            version = TemplateVersion.from_template(updated)
            version.created_by = updated_by or template.created_by

        await self._store.save(updated, version)
        logger.info(
            "Template updated",
            template_id=template_id,
            version=updated.version,
            new_version=content_changed,
        )
        return updated

    async def get_template(self, template_id: str) -> Template:
        template = await self._store.get(template_id)
        if not template:
            raise TemplateNotFound(template_id)
        return template

    async def list_templates(self, type: str | None = None, active_only: bool = False) -> list[Template]:
        templates = await self._store.list_all()
        return [
            t
            for t in templates
            if (type is None or t.type == type) and (not active_only or t.is_active)
        ]

    async def get_versions(self, template_id: str) -> list[TemplateVersion]:
        await self.get_template(template_id)
        return await self._store.get_versions(template_id)

    async def rollback(self, template_id: str, version: int, updated_by: str | None = None) -> Template:
        """Restore an earlier version's content as a new version.

        Raises:
            TemplateNotFound: Unknown template or version
        """
        old = await self._store.get_version(template_id, version)
        if not old:
            raise TemplateNotFound(f"{template_id} version {version}")
        return await self.update_template(
            template_id,
            title=old.title,
            body=old.body,
            variables=old.variables,
            metadata=old.metadata,
            updated_by=updated_by,
        )

    async def render(self, template_id: str, data: dict[str, Any]) -> RenderedTemplate:
        """Render a stored template.

        Raises:
            TemplateNotFound: Unknown template
            InvalidTemplateError: Template is inactive
            MissingVariableError: A required variable has no value
        """
        template = await self.get_template(template_id)
        if not template.is_active:
            raise InvalidTemplateError(f"Template {template_id} is inactive")
        return self.render_content(
            template.title,
            template.body,
            template.variables,
            data,
            metadata=template.metadata,
        )
