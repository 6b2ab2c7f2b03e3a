"""
AlpacaDeck Services Package

Equipment Control
-----------------
- services.alpaca: Alpaca HTTP client, ImageBytes decoding, discovery and
  per-device command adapters
- services.polling: Device-type profiles and the property poller
- services.actions: Action dispatcher
- services.camera: Camera exposure tracking
"""
