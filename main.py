"""
Session Guard API entrypoint.

    uvicorn main:app --reload

Schema creation and the session monitoring loops are controlled by
`CREATE_SCHEMA_ON_STARTUP` and `MONITORING_ENABLED`.
"""

from app.main import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
