"""
BabelPod FastAPI control plane: settings, routers and schemas.
"""
