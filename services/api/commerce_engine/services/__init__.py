"""Business logic services.

Services contain all integration logic and are called by routes and scripts:
- platforms / platform_client: per-platform profiles and the REST client
- credentials / oauth: credential store and the OAuth connector
- webhooks / sync: webhook gateway and catalog/order synchronizer
- attribution: click qualification and commission creation

Services accept dependencies (session, settings, HTTP client, clock) explicitly.
"""
