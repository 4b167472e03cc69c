"""
Response envelope shared by the HTTP routes.
"""

from typing import Any


def api_response(data: Any, message: str = "Success") -> dict:
    return {"success": True, "message": message, "data": data}
