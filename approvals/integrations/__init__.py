"""approvals.integrations — outbound gateways.

All outbound HTTP calls to collaborating services go through
``service_gateway.ServiceGateway``; event publication and consumption go
through ``event_bus``.  Services and blueprints never call ``requests`` or
``redis`` directly.

Current gateways:
  service_gateway.ServiceGateway — product, party and graph services
  event_bus.RedisStreamBus / MemoryBus — workflow event bus
"""
