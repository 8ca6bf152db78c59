from setuptools import setup, find_packages

setup(
    name="reminder-mailer",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "reminder-service=app.reminders.service:main",
            "reminder-worker=app.reminders.worker_process:main",
        ],
    },
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "psycopg2-binary",
        "pydantic>=2",
        "pydantic-settings",
        "python-dotenv",
        "celery",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
        "requests",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
