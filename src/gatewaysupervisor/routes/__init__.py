from .gateway import router as gateway_state_router

__all__ = ["gateway_state_router"]
