"""
JSON API helpers shared by the control endpoints.

All errors return: {"error": "code", "message": "human readable message"}
"""
