import uvicorn

from cascade_categorizer.app import app
from cascade_categorizer.logger import get_logging_config


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=get_logging_config())


if __name__ == "__main__":
    run()
