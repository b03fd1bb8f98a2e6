"""
Business logic services.

Import services from their modules, e.g.
`from src.services.monetization_service import MonetizationService`.
"""
