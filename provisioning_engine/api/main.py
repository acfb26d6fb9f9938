from fastapi import FastAPI

from provisioning_engine.api.errors import register_error_handlers
from provisioning_engine.api.routes.cargo import router as cargo_router
from provisioning_engine.api.routes.regions import router as regions_router
from provisioning_engine.api.routes.servers import router as servers_router
from provisioning_engine.api.routes.units import router as units_router

app = FastAPI(title="Provisioning Engine API")

register_error_handlers(app)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(servers_router, prefix="/api")
app.include_router(cargo_router, prefix="/api")
app.include_router(regions_router, prefix="/api")
app.include_router(units_router, prefix="/api")
