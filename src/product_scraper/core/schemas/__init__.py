"""Pydantic schemas for request/response validation.

Sub-modules:
    jobs    - JobStatus, JobOptions, ScrapeInitRequest, Job
    recipes - Recipe, RecipeSelectors, RecipeBehavior, transform steps
"""

from __future__ import annotations
