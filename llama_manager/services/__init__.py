# Services module
# Import services directly where needed to avoid circular imports
#
# Example:
#   from llama_manager.services.proxy_service import ProxyService
