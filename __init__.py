from .expanded_metadata import NODE_CLASS_MAPPINGS

__all__ = ["NODE_CLASS_MAPPINGS"]

# Register web API
try:
    from .expanded_metadata import web_api
    import server
    web_api.setup(server.PromptServer.instance.app)
except Exception as e:
    print(f"[ExpandedMetadata] Web API not loaded: {e}")
