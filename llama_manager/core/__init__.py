# Core module
# Import core components directly where needed to avoid circular imports
#
# Example:
#   from llama_manager.core.orchestrator import RestartOrchestrator
