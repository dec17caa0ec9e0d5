"""
MedChat Backend Runner
Run with: python run.py
"""

import uvicorn
from medchat.config import settings


if __name__ == "__main__":
    print(f"""
    MedChat - real-time patient/doctor messaging

    Starting server at http://{settings.HOST}:{settings.PORT}

    API Documentation: http://localhost:{settings.PORT}/docs
    """)

    uvicorn.run(
        "medchat.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
