# libs/suggestions.py
"""Pre-fill hints for the confirmation form.

Ничего не сохраняет: по имени контрагента, тексту и сумме подбирает
назначение платежа и категорию, а если поставщик уже известен – добавляет
его последние товары и категорию по умолчанию.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from libs.models import ParsedExtraction, Suggestion, Supplier

# (ключевые слова, назначение) – порядок важен, побеждает первое совпадение
PURPOSE_RULES: list[tuple[tuple[str, ...], str]] = [
    (("fresh", "vegetables", "market", "groceries", "fruits"), "Fresh vegetables and fruits"),
    (("meat", "butchery", "chicken", "fish"), "Meat and poultry supplies"),
    (("dairy", "milk", "cheese"), "Dairy products"),
    (("bakery", "bread", "flour"), "Bakery items and supplies"),
    (("spices", "seasoning"), "Spices and seasonings"),
    (("kenya power", "kplc", "power", "electricity"), "Electricity bill payment"),
    (("nairobi water", "water", "sewerage"), "Water and sewerage bill"),
    (("safaricom", "airtel", "telkom"), "Internet and communication services"),
    (("hardware", "paint", "cement", "iron"), "Maintenance and repair supplies"),
    (("cleaning", "detergent", "soap"), "Cleaning supplies"),
    (("linen", "towel", "bedding"), "Bed linen and towels"),
    (("salary", "wage", "staff", "employee"), "Staff wages and salaries"),
    (("transport", "fuel", "petrol"), "Transportation and fuel"),
    (("furniture", "table", "chair", "bed"), "Furniture and equipment"),
    (("electronics", "tv", "fridge"), "Electronic equipment"),
]

CATEGORY_RULES: list[tuple[tuple[str, ...], str]] = [
    (("vegetables", "fruits", "meat", "dairy", "food", "kitchen"), "Food & Beverages"),
    (("supplies", "ingredients", "spices", "bakery"), "Kitchen Supplies"),
    (("cleaning", "detergent", "housekeeping"), "Housekeeping"),
    (("linen", "towel", "bedding"), "Linens & Towels"),
    (("maintenance", "repair", "paint", "hardware"), "Maintenance & Repairs"),
    (("electricity", "power", "water", "internet", "bill"), "Utilities & Bills"),
    (("salary", "wage", "staff", "employee"), "Staff Wages"),
    (("amenities", "guest", "toiletries"), "Guest Amenities"),
    (("furniture", "equipment", "electronics"), "Equipment & Furniture"),
    (("transport", "fuel", "petrol"), "Transportation"),
    (("marketing", "event", "promotion"), "Marketing & Events"),
    (("security", "safety", "guard"), "Security & Safety"),
]

DEFAULT_CATEGORY = "Food & Beverages"


def suggest_purpose(counterparty_name: str, text: str, amount: Decimal) -> str:
    recipient = counterparty_name.lower()
    body = text.lower()
    for keywords, purpose in PURPOSE_RULES:
        if any(k in recipient or k in body for k in keywords):
            return purpose

    if amount > 50000:
        return "Major equipment or monthly expenses"
    if amount > 20000:
        return "Weekly supplies or services"
    if amount > 5000:
        return "Daily supplies or utilities"
    if amount < 1000:
        return "Small supplies or miscellaneous"
    return "General supplies"


def suggest_category(counterparty_name: str, purpose: str) -> str:
    recipient = counterparty_name.lower()
    purpose_lower = purpose.lower()
    for keywords, category in CATEGORY_RULES:
        if any(k in purpose_lower or k in recipient for k in keywords):
            return category
    return DEFAULT_CATEGORY


def suggest(extraction: ParsedExtraction, text: str, supplier: Optional[Supplier] = None) -> Suggestion:
    name = extraction.counterparty_name or (supplier.name if supplier else "")
    purpose = suggest_purpose(name, text, extraction.amount)
    return Suggestion(
        purpose=purpose,
        category_name=suggest_category(name, purpose),
        # самые свежие товары – первыми
        item_names=list(reversed(supplier.common_items)) if supplier else [],
        default_category_id=supplier.default_category_id if supplier else None,
    )


__all__ = ["suggest", "suggest_purpose", "suggest_category"]
