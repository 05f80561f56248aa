"""Calendar arithmetic for billing cycles and delivery weekdays."""
