from fastapi import FastAPI
from logtiers.routes.logs import router as logs_router
from logtiers.routes.metrics import router as metrics_router

app = FastAPI(title="Log Tiers")

app.include_router(logs_router)
app.include_router(metrics_router)

@app.get("/health")
def health():
    return {"ok": True}
