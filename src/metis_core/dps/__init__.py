"""eCloud DPS client and wire models."""
