"""Shared API dependencies."""

from fastapi import Header


async def get_owner_id(x_owner_id: str = Header(..., min_length=1, max_length=100)) -> str:
    """Identity of the calling user, supplied by the upstream application."""
    return x_owner_id
