"""FastAPI router for recipes.

Routes:
    GET  /api/recipes/list                 - recipe summaries
    GET  /api/recipes/all                  - full recipe documents
    GET  /api/recipes/names                - recipe names
    GET  /api/recipes/get/{name}           - one recipe
    GET  /api/recipes/getBySite?siteUrl=   - best recipe for a site
    POST /api/recipes/validate             - ``{recipeName}`` -> ``{isValid}``
    POST /api/recipes/loadFromFile         - load a file from ``RECIPES_DIR``
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from product_scraper.api.dependencies import RegistryDep
from product_scraper.api.responses import ok
from product_scraper.core.exceptions import ValidationError
from product_scraper.core.schemas.recipes import Recipe

logger = structlog.get_logger(__name__)

router = APIRouter()


class ValidateRecipeRequest(BaseModel):
    """``recipeName`` or ``recipe``; older dashboard builds send the latter."""

    recipe_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("recipeName", "recipe", "name"),
    )


class LoadRecipeFileRequest(BaseModel):
    file_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("filePath", "file_path"),
    )


def _summary(recipe: Recipe) -> dict[str, Any]:
    return {
        "name": recipe.name,
        "description": recipe.description,
        "version": recipe.version,
        "siteUrl": recipe.site_url,
    }


@router.get("/list")
async def list_recipes(request: Request, registry: RegistryDep) -> JSONResponse:
    return ok(request, [_summary(recipe) for recipe in registry.list_recipes()])


@router.get("/all")
async def all_recipes(request: Request, registry: RegistryDep) -> JSONResponse:
    return ok(request, [recipe.to_api() for recipe in registry.list_recipes()])


@router.get("/names")
async def recipe_names(request: Request, registry: RegistryDep) -> JSONResponse:
    return ok(request, registry.names())


@router.get("/get/{name}")
async def get_recipe(request: Request, name: str, registry: RegistryDep) -> JSONResponse:
    """Raises ``NotFoundError`` for unknown names, ``RecipeError`` for rejected ones."""
    return ok(request, registry.get(name).to_api())


@router.get("/getBySite")
async def get_recipe_by_site(
    request: Request,
    registry: RegistryDep,
    site_url: str = Query(alias="siteUrl", min_length=1),
) -> JSONResponse:
    """Exact host first, then glob patterns, then the catch-all recipe."""
    return ok(request, registry.get_by_site(site_url).to_api())


@router.post("/validate")
async def validate_recipe(
    request: Request,
    payload: ValidateRecipeRequest,
    registry: RegistryDep,
) -> JSONResponse:
    """Report whether a recipe exists and passed validation.

    An unknown or rejected recipe is a normal answer (``isValid: false``),
    not an error.
    """
    if not payload.recipe_name:
        raise ValidationError("recipeName is required", field="recipeName")
    is_valid = registry.validate(payload.recipe_name)
    data: dict[str, Any] = {"isValid": is_valid, "recipeName": payload.recipe_name}
    if payload.recipe_name in registry.errors:
        data["error"] = registry.errors[payload.recipe_name]
    return ok(request, data)


@router.post("/loadFromFile")
async def load_recipe_file(
    request: Request,
    payload: LoadRecipeFileRequest,
    registry: RegistryDep,
) -> JSONResponse:
    """Load (or reload) recipes from a file inside the recipes directory.

    Returns the first recipe in the file, which is what the dashboard shows.

    Raises:
        RecipeError: Path outside ``RECIPES_DIR``, unreadable or invalid file.
    """
    if not payload.file_path:
        raise ValidationError("filePath is required", field="filePath")
    recipes = registry.load_file(payload.file_path)
    logger.info(
        "recipes_loaded_from_file",
        file_path=payload.file_path,
        recipes=[recipe.name for recipe in recipes],
    )
    return ok(
        request,
        recipes[0].to_api(),
        message=f"Loaded {len(recipes)} recipe(s)",
    )
