from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Amount = Union[float, str]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Substitution(_CamelModel):
    name: str
    amount: Optional[Amount] = None
    unit: Optional[str] = None
    description: Optional[str] = None


class Ingredient(_CamelModel):
    name: str
    amount: Optional[Amount] = None
    unit: Optional[str] = None
    preparation: Optional[str] = None
    suggested_substitutions: List[Substitution] = Field(default_factory=list)


class IngredientGroup(_CamelModel):
    name: str = "Main"
    ingredients: List[Ingredient] = Field(default_factory=list)


class Nutrition(_CamelModel):
    calories: Optional[Union[float, str]] = None
    protein: Optional[str] = None


class StructuredRecipe(_CamelModel):
    """The recipe document returned to clients and stored in the cache.

    Field names serialize as camelCase so cached records and API responses
    share one shape.
    """

    id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, alias="shortDescription")
    ingredient_groups: List[IngredientGroup] = Field(default_factory=list, alias="ingredientGroups")
    instructions: List[str] = Field(default_factory=list)
    substitutions_text: Optional[str] = None
    recipe_yield: Optional[str] = Field(None, alias="recipeYield")
    prep_time: Optional[str] = Field(None, alias="prepTime")
    cook_time: Optional[str] = Field(None, alias="cookTime")
    total_time: Optional[str] = Field(None, alias="totalTime")
    nutrition: Optional[Nutrition] = None
    tips: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    source_url: Optional[str] = Field(None, alias="sourceUrl")

    def all_ingredients(self) -> List[Ingredient]:
        return [ingredient for group in self.ingredient_groups for ingredient in group.ingredients]

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
