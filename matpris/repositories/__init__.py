"""Repository helpers for database queries."""

from matpris.repositories.ingredient_repository import CooldownPolicy, IngredientRepository

__all__ = ["CooldownPolicy", "IngredientRepository"]
