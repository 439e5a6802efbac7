from typing import Annotated

from fastapi import Depends, Request

from batch_engine.engine import BatchEngine

def get_engine(request: Request) -> BatchEngine:
    return request.app.state.engine

# Dependency for the engine bound to the running app
EngineDep = Annotated[BatchEngine, Depends(get_engine)]
