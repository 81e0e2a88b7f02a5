"""Client-side round runtime: growth engine, room coordination and transports.

Nothing in this package touches Flask; the pieces are wired together through
a ``ClientContext`` passed in at construction time.
"""
