"""
chatrelay - Streaming Chat Gateway

Lets one chat client consume many streaming chat-completion upstreams
through a uniform event stream, failing over across accounts when one is
exhausted or rate limited.
"""

__version__ = "0.1.0"
