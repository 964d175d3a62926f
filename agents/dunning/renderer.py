"""Message rendering for dunning steps.

Substitution uses a sandboxed Jinja2 environment restricted to plain
``{{name}}`` placeholders: statement and comment markers are ordinary text
and any other expression (attribute access, filters, calls) is rejected.
Unlike the usual ``StrictUndefined`` setup, an unknown ``{{name}}`` is
rendered back verbatim so the operator can see which variable was missing;
whether such a message may still be sent is decided by
``DunningConfig.strict_placeholders``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from jinja2 import TemplateError, Undefined, meta, nodes
from jinja2.sandbox import SandboxedEnvironment

from .config import DunningConfig, SchoolProfile
from .dto import DunningStep, EventType, Installment
from .errors import TemplateNotFoundError, TemplateRenderError, UnresolvedPlaceholderError
from .repositories import TemplateRepository

logger = logging.getLogger(__name__)

HEADER_ICON = "📢"
DEFAULT_STUDENT_NAME = "Aluno"
DEFAULT_GUARDIAN_NAME = "Responsável"


class KeepPlaceholderUndefined(Undefined):
    """Renders an unknown variable as its original ``{{name}}`` placeholder."""

    __slots__ = ()

    def __str__(self) -> str:
        if self._undefined_name is None:
            return ""
        return "{{%s}}" % self._undefined_name


_ENV = SandboxedEnvironment(
    undefined=KeepPlaceholderUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    # Statements and comments are off: "{%" and "{#" in operator text stay literal
    block_start_string="\x00{%",
    block_end_string="%}\x00",
    comment_start_string="\x00{#",
    comment_end_string="#}\x00",
)


def _parse(text: str) -> nodes.Template:
    """Parse ``text``, accepting nothing but literal text and ``{{name}}``.

    Raises:
        TemplateRenderError: If ``text`` is malformed or uses another expression
    """
    try:
        ast = _ENV.parse(text)
    except TemplateError as exc:
        raise TemplateRenderError(f"Invalid template: {exc}") from exc
    for output in ast.body:
        for node in getattr(output, "nodes", ()):
            if not isinstance(node, (nodes.TemplateData, nodes.Name)):
                raise TemplateRenderError(
                    f"Invalid template: only {{{{name}}}} placeholders are supported (line {node.lineno})"
                )
    return ast


def unresolved_placeholders(text: str, variables: Mapping[str, Any]) -> List[str]:
    """Names used in ``text`` that ``variables`` does not provide."""
    names = meta.find_undeclared_variables(_parse(text or ""))
    return sorted(name for name in names if name not in variables)


def substitute(text: str, variables: Mapping[str, Any]) -> str:
    """Replace every ``{{name}}`` in ``text``; unknown names are left literally.

    Raises:
        TemplateRenderError: If ``text`` is not a valid template
    """
    if not text:
        return ""
    try:
        return _ENV.from_string(_parse(text)).render(**variables)
    except TemplateError as exc:
        raise TemplateRenderError(f"Invalid template: {exc}") from exc


def format_brl(value: Decimal) -> str:
    """pt-BR currency: ``R$ 1.234,56``."""
    amount = Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    digits = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{sign}R$ {digits}"


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def build_variables(installments: Sequence[Installment], school_name: Optional[str] = None) -> Dict[str, str]:
    """Template variables for the installments covered by one message.

    The amount is the group total and the count its size; names, due date
    and link come from the earliest installment. Portuguese and English
    aliases are both provided. Link variables exist only when that
    installment has a billing URL.
    """
    if not installments:
        raise ValueError("At least one installment is required")
    installment = min(installments, key=lambda i: (i.due_date, i.id))
    count = len(installments)
    student = installment.student_name or DEFAULT_STUDENT_NAME
    guardian = installment.guardian_name or DEFAULT_GUARDIAN_NAME
    amount = format_brl(sum((i.value for i in installments), Decimal("0")))
    due = format_date(installment.due_date)

    variables = {
        "aluno": student,
        "student_name": student,
        "responsavel": guardian,
        "parent_name": guardian,
        "valor": amount,
        "amount": amount,
        "vencimento": due,
        "due_date": due,
        "quantidade": str(count),
        "count": str(count),
    }
    if installment.billing_url:
        variables["link_boleto"] = installment.billing_url
        variables["link"] = installment.billing_url
    if school_name:
        variables["escola"] = school_name
        variables["school_name"] = school_name
    return variables


@dataclass
class RenderedMessage:
    """Final text for one pair, as sent to the channel."""

    title: str
    body: str
    text: str
    template_key: Optional[str] = None
    unresolved: List[str] = field(default_factory=list)


class MessageRenderer:
    """Resolve a step's text source and produce the channel message."""

    def __init__(self, templates: TemplateRepository):
        self.templates = templates

    def render(
        self,
        step: DunningStep,
        installments: Sequence[Installment],
        school: SchoolProfile,
        config: DunningConfig,
    ) -> RenderedMessage:
        """Render one message for ``step`` covering ``installments``.

        Args:
            step: Step being dispatched
            installments: Installments of one enrollment due for the step
            school: School profile (header branding)
            config: Engine config (placeholder policy, default header)

        Returns:
            Rendered message

        Raises:
            TemplateNotFoundError: If the step needs a template that does not exist
            UnresolvedPlaceholderError: If placeholders remain and the policy is strict
            TemplateRenderError: If the template text is invalid
        """
        variables = build_variables(installments, school.name)

        title_source = ""
        template_key = None
        if step.use_custom_message and (step.custom_message or "").strip():
            body_source = step.custom_message
        else:
            key = (step.template_key or "").strip()
            if not key:
                raise TemplateNotFoundError(step.template_key)
            template = self.templates.get_template(key)
            if template is None:
                raise TemplateNotFoundError(key)
            template_key = key
            body_source = template.message_template
            if step.event_type != EventType.CREATION:
                title_source = template.title_template or ""

        unresolved = sorted(
            set(unresolved_placeholders(title_source, variables))
            | set(unresolved_placeholders(body_source, variables))
        )
        if unresolved:
            if config.strict_placeholders:
                raise UnresolvedPlaceholderError(unresolved, template_key)
            logger.warning(
                "Sending message with unresolved placeholders",
                extra={
                    "school_id": school.school_id,
                    "step_id": step.id,
                    "template_key": template_key,
                    "placeholders": unresolved,
                },
            )

        title = substitute(title_source, variables).strip()
        body = substitute(body_source, variables)

        header = school.header or config.default_header
        text = f"{HEADER_ICON} *{header}*\n\n"
        if title:
            text += f"*{title}*\n\n"
        text += body

        return RenderedMessage(
            title=title,
            body=body,
            text=text,
            template_key=template_key,
            unresolved=unresolved,
        )
