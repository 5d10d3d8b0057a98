from fastapi import FastAPI

from .admin import bind_control_plane, router as admin_router


def create_app(control_plane=None):
    app = FastAPI(title="Ops Safety Control Plane")
    app.include_router(admin_router, prefix="/admin/safety")
    bind_control_plane(control_plane)
    return app


def main():
    import os
    import uvicorn
    from .logging_setup import setup_logging
    from .metrics import start_metrics_server_if_enabled

    setup_logging()
    start_metrics_server_if_enabled()
    app = create_app()
    uvicorn.run(app, host=os.getenv("OPS_SAFETY_HOST", "0.0.0.0"), port=int(os.getenv("OPS_SAFETY_PORT", "8002")))


# convenience for running locally
if __name__ == '__main__':
    main()
