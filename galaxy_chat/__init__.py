"""Galaxy chat: streaming conversational backend with editable history and long-term memory."""
