from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re

CENTS = Decimal("0.01")
# Средняя цена хранится точнее денежных сумм (4 знака)
MEAN_SCALE = Decimal("0.0001")


def parse_amount(num_str: str) -> Decimal:
    """
    Преобразует сумму из M-Pesa уведомления в Decimal с точностью до цента.
    - В этом формате запятая – всегда разделитель тысяч ("2,500.00"),
      точка – всегда десятичный.
    - Пробелы и хвостовая точка конца предложения ("Ksh15,750.50.")
      отбрасываются.
    """
    if not isinstance(num_str, str):
        # Если это уже число, просто преобразуем
        return Decimal(num_str).quantize(CENTS, rounding=ROUND_HALF_UP)

    cleaned_str = num_str.strip().replace(" ", "").replace(",", "")
    cleaned_str = cleaned_str.rstrip(".")
    if not cleaned_str:
        raise ValueError("Input string cannot be empty")

    final_str = re.sub(r"[^0-9.]", "", cleaned_str)
    try:
        return Decimal(final_str).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Не удалось преобразовать строку '{num_str}' в число после очистки до '{final_str}'")


def mean_price(total: Decimal, count: int) -> Decimal:
    """Среднее по накопленной сумме покупок.

    Делим один раз от точной суммы, поэтому ошибка округления не копится
    от покупки к покупке.
    """
    if count <= 0:
        raise ValueError("count must be positive")
    return (Decimal(total) / count).quantize(MEAN_SCALE, rounding=ROUND_HALF_UP)
