"""
FastAPI application for the flow validation and repair service.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flow_agent import __version__
from flow_agent.api.routes import router as flow_router
from flow_agent.core.observability import ObservabilityConfig, ObservabilityManager

ObservabilityManager.initialize(ObservabilityConfig.from_env())

app = FastAPI(
    title="Flow Agent API",
    description="Validate, repair and refine conversational flow documents",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flow_router)


@app.get("/")
async def root():
    return {"service": "Flow Agent API", "version": __version__, "docs": "/docs"}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
