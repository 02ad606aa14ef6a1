"""Bundle naming.

Bundle names are derived only from the entry and the naming rule, so
re-running a pipeline for the same platform yields the same name and
overwrites the previous bundle at the sink.
"""

from __future__ import annotations

import re
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crossbuild.pipeline.matrix import PlatformEntry

DEFAULT_TEMPLATE = "{arch}-{family}"
TEMPLATE_FIELDS = frozenset({"arch", "family", "platform", "version"})
BUNDLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


def validate_template(template: str) -> None:
    """Check that a naming template only uses known placeholders.

    Raises:
        ValueError: If the template is empty, malformed or uses an
            unknown placeholder.
    """
    if not template.strip():
        raise ValueError("naming template must not be empty")
    try:
        fields = {
            name for _, name, _, _ in string.Formatter().parse(template) if name is not None
        }
    except ValueError as e:
        raise ValueError(f"malformed naming template '{template}': {e}") from None
    unknown = fields - TEMPLATE_FIELDS
    if unknown:
        raise ValueError(
            f"unknown placeholder(s) in naming template: {', '.join(sorted(unknown))}"
        )


@dataclass(frozen=True)
class NamingRule:
    """Rule for naming published bundles.

    Attributes:
        template: Format string over {arch}, {family}, {platform}, {version}.
        prefix: Optional name prefix, joined with '-'.
        version: Value for the {version} placeholder.
    """

    template: str = DEFAULT_TEMPLATE
    prefix: str | None = None
    version: str | None = None


def compute_bundle_name(entry: PlatformEntry, rule: NamingRule | None = None) -> str:
    """Compute the bundle name for an entry.

    Args:
        entry: Matrix entry.
        rule: Naming rule (defaults to ``{arch}-{family}``).

    Returns:
        Bundle name, e.g. ``x86_64-linux``.

    Raises:
        ValueError: If the template is invalid, needs a missing version, or
            produces an unsafe name.
    """
    if rule is None:
        rule = NamingRule()
    validate_template(rule.template)
    if "{version}" in rule.template and not rule.version:
        raise ValueError("naming template uses {version} but no version is set")

    name = rule.template.format(
        arch=entry.arch_tag,
        family=entry.platform_family,
        platform=entry.slug,
        version=rule.version or "",
    )
    if rule.prefix:
        name = f"{rule.prefix}-{name}"

    if not BUNDLE_NAME_PATTERN.match(name):
        raise ValueError(f"bundle name '{name}' is not a safe file name")
    return name


__all__ = [
    "DEFAULT_TEMPLATE",
    "TEMPLATE_FIELDS",
    "NamingRule",
    "compute_bundle_name",
    "validate_template",
]
