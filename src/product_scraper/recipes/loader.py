"""Recipe loading, validation and resolution.

Recipes are JSON documents.  A file holds either a single recipe object or
``{"recipes": [...]}``.  Built-in recipes ship inside the package under
``recipes/builtin/``; ``Settings.recipes_dir`` adds deployment-specific ones.

Recipes that fail validation never become resolvable.  The failure is
logged and kept in :attr:`RecipeRegistry.errors` keyed by recipe name (or
file path when the name could not be read) so the API can tell "malformed"
apart from "unknown".

Resolution by site URL tries, in order:

1. an exact host match (``siteUrl`` given as a host or a full URL),
2. a glob match on the host (``"*.myshopify.com"``),
3. the catch-all recipe (``siteUrl == "*"``).
"""

from __future__ import annotations

import fnmatch
import json
import logging
import urllib.parse
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from product_scraper.core.exceptions import NotFoundError, RecipeError
from product_scraper.core.schemas.recipes import Recipe

logger = logging.getLogger(__name__)

BUILTIN_DIR: Path = Path(__file__).parent / "builtin"
"""Directory of the recipes shipped with the package."""

CATCH_ALL: str = "*"


def _host_of(value: str) -> str:
    """Return the lower-cased host of a URL, or *value* itself if it has no scheme."""
    value = value.strip().lower()
    if "://" in value:
        return (urllib.parse.urlparse(value).hostname or "").lower()
    return value.split("/", 1)[0]


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def parse_recipe_document(document: Any, source: str) -> list[dict[str, Any]]:
    """Return the raw recipe objects contained in a parsed JSON document.

    Raises:
        RecipeError: If the document is neither a recipe object nor a
            ``{"recipes": [...]}`` wrapper.
    """
    if isinstance(document, dict) and "recipes" in document:
        items = document["recipes"]
        if not isinstance(items, list):
            raise RecipeError(f"'recipes' must be a list in {source}", recipe=source)
        if not items:
            raise RecipeError(f"No recipes in {source}", recipe=source)
        return items
    if isinstance(document, dict):
        return [document]
    raise RecipeError(f"Unsupported recipe document in {source}", recipe=source)


def build_recipe(data: Any, source: str) -> Recipe:
    """Validate one raw recipe object.

    Raises:
        RecipeError: With a flattened pydantic error message on failure.
    """
    name = data.get("name") if isinstance(data, dict) else None
    try:
        return Recipe.model_validate(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise RecipeError(
            f"Invalid recipe '{name or source}': {problems}",
            recipe=name or source,
        ) from exc


class RecipeRegistry:
    """In-memory cache of validated recipes.

    Recipes are immutable pydantic models, so a job can hold on to the
    instance it resolved at start-up while the registry is reloaded.

    Args:
        recipes_dir: Optional directory of extra recipe files.  It is also
            the only directory :meth:`load_file` may read from.
        include_builtin: Load the package's built-in recipes.
    """

    def __init__(
        self,
        recipes_dir: str | Path | None = None,
        *,
        include_builtin: bool = True,
    ) -> None:
        self._recipes_dir = Path(recipes_dir).resolve() if recipes_dir else None
        self._include_builtin = include_builtin
        self._recipes: dict[str, Recipe] = {}
        self.errors: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> "RecipeRegistry":
        """(Re)load every recipe from the built-in and configured directories."""
        self._recipes.clear()
        self.errors.clear()
        directories: list[Path] = []
        if self._include_builtin:
            directories.append(BUILTIN_DIR)
        if self._recipes_dir is not None:
            directories.append(self._recipes_dir)

        for directory in directories:
            if not directory.is_dir():
                logger.warning("recipes: directory %s does not exist", directory)
                continue
            for path in sorted(directory.glob("*.json")):
                try:
                    self._load_path(path)
                except RecipeError as exc:
                    # Already logged and recorded; keep loading the rest.
                    logger.debug("recipes: skipped %s: %s", path, exc)

        logger.info(
            "recipes: loaded %d recipe(s), %d rejected",
            len(self._recipes),
            len(self.errors),
        )
        return self

    def register(self, recipe: Recipe) -> None:
        """Add or replace a recipe by name."""
        if recipe.name in self._recipes:
            logger.info("recipes: replacing recipe '%s'", recipe.name)
        self._recipes[recipe.name] = recipe
        self.errors.pop(recipe.name, None)

    def load_file(self, file_path: str) -> list[Recipe]:
        """Load the recipes in *file_path* and register them.

        Relative paths resolve against ``recipes_dir``; absolute paths must
        point inside it.

        Raises:
            RecipeError: If no recipes directory is configured, the path
                escapes it, or the file is missing or malformed.
        """
        if self._recipes_dir is None:
            raise RecipeError("No recipes directory is configured", recipe=file_path)

        candidate = Path(file_path)
        if not candidate.is_absolute():
            candidate = self._recipes_dir / candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self._recipes_dir):
            raise RecipeError(
                f"Recipe file must be inside {self._recipes_dir}", recipe=file_path
            )
        if not resolved.is_file():
            raise RecipeError(f"Recipe file not found: {file_path}", recipe=file_path)
        return self._load_path(resolved)

    def _load_path(self, path: Path) -> list[Recipe]:
        source = str(path)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            message = f"Cannot read recipe file {path.name}: {exc}"
            logger.warning("recipes: %s", message)
            self.errors[source] = message
            raise RecipeError(message, recipe=source) from exc

        try:
            items = parse_recipe_document(document, source)
        except RecipeError as exc:
            logger.warning("recipes: %s", exc)
            self.errors[source] = str(exc)
            raise

        loaded: list[Recipe] = []
        failures: list[str] = []
        for item in items:
            try:
                recipe = build_recipe(item, source)
            except RecipeError as exc:
                logger.warning("recipes: %s", exc)
                key = exc.recipe or source
                # A rejected reload also retires the previously loaded version.
                self._recipes.pop(key, None)
                self.errors[key] = str(exc)
                failures.append(str(exc))
                continue
            self.register(recipe)
            loaded.append(recipe)

        if failures and not loaded:
            raise RecipeError("; ".join(failures), recipe=source)
        return loaded

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_recipes(self) -> list[Recipe]:
        """Return every loaded recipe ordered by name."""
        return [self._recipes[name] for name in sorted(self._recipes)]

    def names(self) -> list[str]:
        return sorted(self._recipes)

    def get(self, name: str) -> Recipe:
        """Return the recipe called *name*.

        Raises:
            RecipeError: If a recipe of that name was rejected at load time.
            NotFoundError: If no recipe of that name exists.
        """
        recipe = self._recipes.get(name)
        if recipe is not None:
            return recipe
        if name in self.errors:
            raise RecipeError(self.errors[name], recipe=name)
        raise NotFoundError("recipe", name)

    def validate(self, name: str) -> bool:
        """Return ``True`` if *name* resolves to a valid, loaded recipe."""
        return name in self._recipes

    def get_by_site(self, site_url: str) -> Recipe:
        """Resolve the best recipe for *site_url*.

        Raises:
            NotFoundError: If no recipe matches, not even a catch-all.
        """
        host = _strip_www(_host_of(site_url))
        if not host:
            raise NotFoundError("recipe for site", site_url)

        recipes = self.list_recipes()
        for recipe in recipes:
            pattern = recipe.site_url.strip()
            if pattern == CATCH_ALL or "*" in pattern:
                continue
            if _strip_www(_host_of(pattern)) == host:
                return recipe

        for recipe in recipes:
            pattern = recipe.site_url.strip().lower()
            if pattern == CATCH_ALL or "*" not in pattern:
                continue
            if fnmatch.fnmatchcase(host, _host_of(pattern)):
                return recipe

        for recipe in recipes:
            if recipe.site_url.strip() == CATCH_ALL:
                return recipe

        raise NotFoundError("recipe for site", site_url)

    def __len__(self) -> int:
        return len(self._recipes)

    def __contains__(self, name: object) -> bool:
        return name in self._recipes
