"""design-relay - command relay for outbound-only design-tool extensions.

A caller submits a command and blocks on its id; the extension polls the
relay for work and posts results back; the relay correlates the two.
"""

__version__ = "0.1.0"
