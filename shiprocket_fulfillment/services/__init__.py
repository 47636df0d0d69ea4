# Services layer: Shiprocket client manager, shipment pipeline, tracking reconciliation
