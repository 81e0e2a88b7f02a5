"""Round domain services: signing, generation, validation and scoring.

Everything here is transport-free so it can be shared by the HTTP
blueprints, the Socket.IO handlers and the client-side coordinator.
"""
