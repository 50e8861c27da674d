IN_STOCK = "in-stock"
LOW_STOCK = "low-stock"
OUT_OF_STOCK = "out-of-stock"

STOCK_STATUSES = (IN_STOCK, LOW_STOCK, OUT_OF_STOCK)


def derive_status(quantity: int, min_quantity: int) -> str:
    """
    Classify an item's availability from its on-hand quantity.

    out-of-stock when nothing is left, low-stock while at or below the
    minimum, in-stock otherwise.
    """
    if quantity <= 0:
        return OUT_OF_STOCK
    if quantity <= min_quantity:
        return LOW_STOCK
    return IN_STOCK
