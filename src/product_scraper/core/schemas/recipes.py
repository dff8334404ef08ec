"""Pydantic schema for extraction recipes.

A recipe describes how to locate and clean product fields on one family of
sites.  The schema is closed: unknown selector fields, unknown transform
names and malformed regular expressions are rejected when the recipe is
loaded, so nothing downstream has to second-guess a recipe's shape.

Selector chains
    Every selector field accepts a string or a list of strings and is stored
    as a tuple, primary selector first.  ``fallbacks`` entries are appended
    to the matching chain.  A selector is a CSS selector with an optional
    ``@attribute`` suffix (``"img.main@data-src"``).

Transforms
    Each step is a tagged variant.  The dashboard writes them as shorthand
    strings, which are parsed here::

        "trim"                      -> {"type": "trim"}
        "removeCurrency"            -> {"type": "remove_currency"}
        "replace:<pat>:<repl>"      -> {"type": "replace", ...}
        "regex:<pat>"               -> {"type": "regex_extract", ...}
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Transform steps
# ---------------------------------------------------------------------------


def _check_pattern(value: str) -> str:
    try:
        re.compile(value)
    except re.error as exc:
        raise ValueError(f"invalid regular expression: {exc}") from exc
    return value


class _Step(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TrimStep(_Step):
    type: Literal["trim"] = "trim"


class LowercaseStep(_Step):
    type: Literal["lowercase"] = "lowercase"


class UppercaseStep(_Step):
    type: Literal["uppercase"] = "uppercase"


class CollapseWhitespaceStep(_Step):
    type: Literal["collapse_whitespace"] = "collapse_whitespace"


class StripHtmlStep(_Step):
    type: Literal["strip_html"] = "strip_html"


class RemoveCurrencyStep(_Step):
    type: Literal["remove_currency"] = "remove_currency"


class ReplaceStep(_Step):
    type: Literal["replace"] = "replace"
    pattern: str
    replacement: str = ""

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        return _check_pattern(value)


class RegexExtractStep(_Step):
    """Keep only the match of *pattern*.

    ``group`` selects a capture group; when omitted the first group is used
    if the pattern has one, otherwise the whole match.
    """

    type: Literal["regex_extract"] = "regex_extract"
    pattern: str
    group: Optional[int] = Field(default=None, ge=0)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        return _check_pattern(value)


TransformStep = Annotated[
    Union[
        TrimStep,
        LowercaseStep,
        UppercaseStep,
        CollapseWhitespaceStep,
        StripHtmlStep,
        RemoveCurrencyStep,
        ReplaceStep,
        RegexExtractStep,
    ],
    Field(discriminator="type"),
]

#: Shorthand names (as written by the dashboard) -> canonical step type.
_SHORTHAND_STEPS: dict[str, str] = {
    "trim": "trim",
    "lowercase": "lowercase",
    "uppercase": "uppercase",
    "collapsewhitespace": "collapse_whitespace",
    "collapse_whitespace": "collapse_whitespace",
    "striphtml": "strip_html",
    "strip_html": "strip_html",
    "removecurrency": "remove_currency",
    "remove_currency": "remove_currency",
}


def parse_transform(value: Any) -> Any:
    """Turn a shorthand transform string into its tagged-variant dict.

    Dicts pass through untouched for the discriminated union to validate.

    Raises:
        ValueError: For an unknown shorthand name.
    """
    if not isinstance(value, str):
        return value
    if value.startswith("replace:"):
        _, _, rest = value.partition(":")
        pattern, _, replacement = rest.partition(":")
        return {"type": "replace", "pattern": pattern, "replacement": replacement}
    if value.startswith("regex:"):
        return {"type": "regex_extract", "pattern": value[len("regex:"):]}
    step_type = _SHORTHAND_STEPS.get(value.strip().lower())
    if step_type is None:
        raise ValueError(f"unknown transform '{value}'")
    return {"type": step_type}


# ---------------------------------------------------------------------------
# Recipe sections
# ---------------------------------------------------------------------------


SelectorChain = tuple[str, ...]


def _as_chain(value: Any) -> Any:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if isinstance(value, (list, tuple)):
        chain = tuple(s.strip() for s in value if isinstance(s, str) and s.strip())
        return chain
    return value


class _RecipeSection(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class RecipeSelectors(_RecipeSection):
    """Selector chains per product field."""

    title: SelectorChain
    price: SelectorChain
    images: SelectorChain
    stock: SelectorChain = ()
    attributes: SelectorChain = ()
    variations: SelectorChain = ()
    description: SelectorChain = ()
    sku: SelectorChain = ()
    product_links: SelectorChain = ()
    next_page: SelectorChain = ()

    @field_validator("*", mode="before")
    @classmethod
    def _normalise_chain(cls, value: Any) -> Any:
        return _as_chain(value)

    @field_validator("title", "price", "images")
    @classmethod
    def _required_non_empty(cls, value: SelectorChain) -> SelectorChain:
        if not value:
            raise ValueError("at least one selector is required")
        return value


class RecipeBehavior(_RecipeSection):
    """Fetch behaviour for a site family.

    Attributes:
        rate_limit: Base inter-request delay in milliseconds.
        max_concurrent: Preferred in-flight extraction tasks.
        timeout: Per-request timeout in milliseconds.
        fast_mode: Skip attributes and descriptions for throughput.
        use_browser: Render pages in headless Chromium instead of plain HTTP.
        wait_for_selectors: Selectors the browser waits for before reading
            the page.
        max_retries: Override of the transient-error retry count.
    """

    rate_limit: Optional[int] = Field(default=None, ge=0, le=10_000)
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=20)
    timeout: Optional[int] = Field(default=None, ge=1_000, le=120_000)
    fast_mode: bool = False
    use_browser: bool = False
    wait_for_selectors: tuple[str, ...] = ()
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


class Recipe(_RecipeSection):
    """A validated, immutable extraction recipe."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    version: str = "1.0.0"
    site_url: str = Field(min_length=1)
    selectors: RecipeSelectors
    transforms: dict[str, tuple[TransformStep, ...]] = Field(default_factory=dict)
    fallbacks: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    behavior: RecipeBehavior = Field(default_factory=RecipeBehavior)

    @field_validator("transforms", mode="before")
    @classmethod
    def _parse_transforms(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        parsed: dict[str, Any] = {}
        for field_name, steps in value.items():
            if steps is None:
                continue
            if isinstance(steps, (str, dict)):
                steps = [steps]
            parsed[field_name] = [parse_transform(step) for step in steps]
        return parsed

    @field_validator("fallbacks", mode="before")
    @classmethod
    def _parse_fallbacks(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {k: _as_chain(v) for k, v in value.items() if v is not None}

    @model_validator(mode="after")
    def _known_fields(self) -> "Recipe":
        known = set(RecipeSelectors.model_fields)
        for section, keys in (("transforms", self.transforms), ("fallbacks", self.fallbacks)):
            for key in keys:
                if _snake(key) not in known:
                    raise ValueError(f"{section} refers to unknown field '{key}'")
        return self

    def chain(self, field_name: str) -> SelectorChain:
        """Return the full selector chain for *field_name*, fallbacks included."""
        primary: SelectorChain = getattr(self.selectors, field_name)
        extra = self.fallbacks.get(field_name) or self.fallbacks.get(to_camel(field_name)) or ()
        return primary + tuple(s for s in extra if s not in primary)

    def transforms_for(self, field_name: str) -> tuple[Any, ...]:
        return self.transforms.get(field_name) or self.transforms.get(to_camel(field_name)) or ()

    def to_api(self) -> dict[str, Any]:
        """Serialise with camelCase keys as the dashboard expects."""
        return self.model_dump(by_alias=True, mode="json")


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()
