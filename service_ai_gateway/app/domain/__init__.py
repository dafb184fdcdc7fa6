"""
Domain logic for the AI gateway.

Includes resource resolution, the privilege oracle, request validation and
the handlers that orchestrate a request from validation to metering.
"""
