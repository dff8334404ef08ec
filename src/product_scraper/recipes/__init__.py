"""Extraction recipes.

Sub-modules:
- ``loader``  - ``RecipeRegistry``: load, validate and resolve recipes
- ``router``  - FastAPI router (``/api/recipes/``)
- ``builtin/`` - JSON recipes shipped with the package
"""
