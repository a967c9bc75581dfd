"""ImageNet food and food-related classes.

Indices follow the ILSVRC-2012 class order used by every ImageNet-1k
classifier export. Two sets are kept apart on purpose:

* ``FOOD_INDICES`` are classes that *are* food (fruit, vegetables, dishes,
  drinks).
* ``FOOD_RELATED_INDICES`` are containers and cookware that, in a meal photo,
  usually hold food. A plated dish frequently scores highest as "plate" or
  "soup bowl" rather than as the food on it.

The decision uses the union of both; ``is_actual_food`` answers the narrower
question.
"""

from __future__ import annotations

from numbers import Integral

NUM_CLASSES: int = 1000

# -- Actual food ------------------------------------------------------------

FOOD_LABELS: dict[int, str] = {
    # Prepared foods & dishes
    924: "guacamole",
    925: "consomme",
    926: "hot pot",
    927: "trifle",
    928: "ice cream",
    929: "ice lolly",
    930: "French loaf",
    931: "bagel",
    932: "pretzel",
    933: "cheeseburger",
    934: "hotdog",
    935: "mashed potato",
    959: "carbonara",
    960: "chocolate sauce",
    961: "dough",
    962: "meat loaf",
    963: "pizza",
    964: "potpie",
    965: "burrito",
    # Vegetables
    936: "head cabbage",
    937: "broccoli",
    938: "cauliflower",
    939: "zucchini",
    940: "spaghetti squash",
    941: "acorn squash",
    942: "butternut squash",
    943: "cucumber",
    944: "artichoke",
    945: "bell pepper",
    946: "cardoon",
    947: "mushroom",
    # Fruits
    948: "Granny Smith",
    949: "strawberry",
    950: "orange",
    951: "lemon",
    952: "fig",
    953: "pineapple",
    954: "banana",
    955: "jackfruit",
    956: "custard apple",
    957: "pomegranate",
    # Drinks
    966: "red wine",
    967: "espresso",
    968: "cup",
    969: "eggnog",
}

# -- Kitchenware & containers -----------------------------------------------

FOOD_RELATED_LABELS: dict[int, str] = {
    # Serving
    809: "soup bowl",
    868: "tray",
    923: "plate",
    # Cooking equipment
    521: "Crock Pot",
    567: "frying pan",
    659: "mixing bowl",
    813: "spatula",
    849: "teapot",
    891: "waffle iron",
    909: "wok",
    910: "wooden spoon",
    # Drink vessels
    440: "beer bottle",
    504: "coffee mug",
    907: "wine bottle",
    # A cup is usually full; it counts as both.
    968: "cup",
}

FOOD_INDICES: frozenset[int] = frozenset(FOOD_LABELS)
FOOD_RELATED_INDICES: frozenset[int] = frozenset(FOOD_RELATED_LABELS)
FOOD_CLASSES: frozenset[int] = FOOD_INDICES | FOOD_RELATED_INDICES

LABEL_NAMES: dict[int, str] = {**FOOD_RELATED_LABELS, **FOOD_LABELS}


def _as_index(class_index: object) -> int | None:
    # bool is an Integral but never a class index
    if isinstance(class_index, bool) or not isinstance(class_index, Integral):
        return None
    return int(class_index)


def is_food_class(class_index: object) -> bool:
    """Return True if the class is food or a food container."""
    return _as_index(class_index) in FOOD_CLASSES


def is_actual_food(class_index: object) -> bool:
    """Return True only for classes that are food themselves."""
    return _as_index(class_index) in FOOD_INDICES


def get_label_name(class_index: object) -> str | None:
    """Return the human-readable name of a food or food-related class.

    Anything that is not an integer class index yields None.
    """
    index = _as_index(class_index)
    return None if index is None else LABEL_NAMES.get(index)
