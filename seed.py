"""
Demo catalog loaded into the in-memory store.
"""

from copy import deepcopy
from typing import Any, Dict, List


_IMG = "https://images.unsplash.com/{}?auto=format&fit=crop&w=800&h=600"


CATEGORIES: List[Dict[str, Any]] = [
    {"id": 1, "name": "Pizza", "icon": "🍕"},
    {"id": 2, "name": "Pasta", "icon": "🍝"},
    {"id": 3, "name": "Dolci", "icon": "🍰"},
    {"id": 4, "name": "Antipasti", "icon": "🥗"},
]


MENU_ITEMS: List[Dict[str, Any]] = [
    # Pizza
    {"id": 1, "name": "Pizza Margherita", "price": "16.99", "category_id": 1,
     "description": "Classic tomato sauce, fresh mozzarella, basil, and olive oil on our signature thin crust",
     "image_url": _IMG.format("photo-1564128442383-9201fcc740eb")},
    {"id": 2, "name": "Pizza Quattro Stagioni", "price": "21.99", "category_id": 1,
     "description": "Four seasons pizza with artichokes, mushrooms, ham, and olives",
     "image_url": _IMG.format("photo-1585238342024-78d387f4a707")},
    {"id": 3, "name": "Pizza Diavola", "price": "19.99", "category_id": 1,
     "description": "Spicy pizza with tomato sauce, mozzarella, spicy salami, and fresh chili peppers",
     "image_url": _IMG.format("photo-1571997478779-2adcbbe9ab2f")},
    {"id": 4, "name": "Pizza Capricciosa", "price": "22.99", "category_id": 1,
     "description": "Ham, mushrooms, artichokes, black olives, and mozzarella",
     "image_url": _IMG.format("photo-1593560708920-61dd98c46a4e")},
    {"id": 5, "name": "Pizza Marinara", "price": "14.99", "category_id": 1,
     "description": "Tomato sauce, garlic, oregano, and olive oil",
     "image_url": _IMG.format("photo-1590947132387-155cc02f3212")},
    {"id": 6, "name": "Pizza Quattro Formaggi", "price": "20.99", "category_id": 1,
     "description": "Mozzarella, gorgonzola, parmesan, and ricotta",
     "image_url": _IMG.format("photo-1513104890138-7c749659a591")},

    # Pasta
    {"id": 7, "name": "Spaghetti Carbonara", "price": "18.99", "category_id": 2,
     "description": "Roman pasta with pancetta, eggs, pecorino cheese, and black pepper",
     "image_url": _IMG.format("photo-1621996346565-e3dbc353d2e5")},
    {"id": 8, "name": "Penne Arrabbiata", "price": "15.99", "category_id": 2,
     "description": "Tomatoes, garlic, red chili peppers, and fresh basil",
     "image_url": _IMG.format("photo-1551892374-ecf8754cf8b0")},
    {"id": 9, "name": "Fettuccine Alfredo", "price": "17.99", "category_id": 2,
     "description": "Butter, heavy cream, and freshly grated parmesan",
     "image_url": _IMG.format("photo-1589302168068-964664d93dc0")},
    {"id": 10, "name": "Lasagna Bolognese", "price": "22.99", "category_id": 2,
     "description": "Layered pasta with meat sauce, bechamel, and three cheeses",
     "image_url": _IMG.format("photo-1571997478779-2adcbbe9ab2f")},

    # Dolci
    {"id": 11, "name": "Tiramisu", "price": "8.99", "category_id": 3,
     "description": "Espresso-soaked ladyfingers, mascarpone, and cocoa",
     "image_url": _IMG.format("photo-1571877227200-a0d98ea607e9")},
    {"id": 12, "name": "Cannoli Siciliani", "price": "7.99", "category_id": 3,
     "description": "Pastry tubes filled with sweet ricotta and pistachios",
     "image_url": _IMG.format("photo-1578662996442-48f60103fc96")},
    {"id": 13, "name": "Gelato Artigianale", "price": "6.99", "category_id": 3,
     "description": "Vanilla, chocolate, and pistachio",
     "image_url": _IMG.format("photo-1567206563064-6f60f40a2b57")},

    # Antipasti
    {"id": 14, "name": "Bruschetta", "price": "9.99", "category_id": 4,
     "description": "Toasted bread with fresh tomatoes, basil, garlic, and olive oil",
     "image_url": _IMG.format("photo-1572441713132-51c75654db73")},
    {"id": 15, "name": "Caprese Salad", "price": "12.99", "category_id": 4,
     "description": "Fresh mozzarella, ripe tomatoes, and basil with balsamic glaze",
     "image_url": _IMG.format("photo-1608897013039-887f21d8c804")},
    {"id": 16, "name": "Antipasto Misto", "price": "16.99", "category_id": 4,
     "description": "Cured meats, Italian cheeses, olives, and marinated vegetables",
     "image_url": _IMG.format("photo-1551024506-0bccd828d307")},
]


EXTRAS: List[Dict[str, Any]] = [
    {"id": 1, "name": "Extra Mozzarella", "price": "2.99", "category_ids": [1, 4]},
    {"id": 2, "name": "Fresh Basil", "price": "1.99", "category_ids": [1, 2]},
    {"id": 3, "name": "Prosciutto", "price": "4.99", "category_ids": [1, 4]},
    {"id": 4, "name": "Mushrooms", "price": "2.50", "category_ids": [1, 2]},
    {"id": 5, "name": "Olives", "price": "2.00", "category_ids": [1, 4]},
    {"id": 6, "name": "Artichokes", "price": "3.50", "category_ids": [1]},
    {"id": 7, "name": "Pepperoni", "price": "3.99", "category_ids": [1]},
    {"id": 8, "name": "Extra Cheese", "price": "2.99", "category_ids": [1, 2]},
]


def seed_records() -> Dict[str, List[Dict[str, Any]]]:
    """Fresh copies of the demo catalog, keyed by table."""
    menu = [{**item, "available": True} for item in MENU_ITEMS]
    extras = [{**extra, "available": True} for extra in EXTRAS]
    return {
        "categories": deepcopy(CATEGORIES),
        "menu": deepcopy(menu),
        "extras": deepcopy(extras),
        "orders": [],
    }
