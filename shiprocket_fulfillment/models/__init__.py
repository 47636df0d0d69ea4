from shiprocket_fulfillment.models.tracking import ShiprocketTracking
