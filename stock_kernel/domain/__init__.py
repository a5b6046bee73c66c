"""
Pure domain layer.

Value enums, counter arithmetic, the testing request lifecycle, request
numbers, the clock abstraction and DTOs.  Nothing here touches the ORM or
the database.
"""
