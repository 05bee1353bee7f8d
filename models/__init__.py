"""Domain, ORM and API schema models."""
