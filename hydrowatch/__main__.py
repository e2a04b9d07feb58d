import uvicorn

from hydrowatch.config import SERVER_HOST, SERVER_PORT

uvicorn.run("hydrowatch.main:app", host=SERVER_HOST, port=SERVER_PORT)
