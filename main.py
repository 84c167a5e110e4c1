import uvicorn, logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vibely.config.settings import settings
from vibely.routes.chat_route import router as chat_route
from vibely.routes.chat_socket_route import router as chat_socket_route
from vibely.routes.error_handlers import register_error_handlers

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.LOG_FILE)
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Vibely Chat API",
    description="Real-time two-party chat with delivery and read receipts",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# register the routes
app.include_router(chat_route, prefix="/chat")
app.include_router(chat_socket_route, prefix="/chat")

@app.get("/")
def root():
    return {"message": f"Vibely chat backend is running ({settings.STORE_BACKEND} store)"}


if __name__ == "__main__":
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
