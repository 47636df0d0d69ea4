"""
Shiprocket Fulfillment Service

Carrier integration core for Shiprocket: authenticated client manager,
shipment creation pipeline and tracking reconciliation, exposed through
a small FastAPI surface.
"""
__version__ = "1.0.0"
