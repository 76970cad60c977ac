import os
from contextlib import asynccontextmanager

import uvicorn

from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.frameworks_drivers.backend_factory import BackendFactory
from llama_cpp_server.frameworks_drivers.config import Config
from llama_cpp_server.interface_adapters.api import API
from llama_cpp_server.shared.logger import Logger


if __name__ == "__main__":
    logger = Logger.get(__name__)

    try:
        config = Config.load(os.environ.get("LLAMA_CPP_SERVER_CONFIG", "config.json"))

        backend_factory = BackendFactory(config.supervisor)
        backends: dict[WorkloadKind, object] = {}

        @asynccontextmanager
        async def lifespan(app):
            # a failed startup aborts the whole server; supervisors already started are reaped
            try:
                if config.embedding:
                    backends[WorkloadKind.EMBEDDING] = await backend_factory.create_embedding(config.embedding)
                if config.completion:
                    backends[WorkloadKind.COMPLETION] = await backend_factory.create_completion(config.completion)
                if config.chat:
                    backends[WorkloadKind.CHAT] = await backend_factory.create_chat_completion(config.chat)
                yield
            finally:
                await backend_factory.shutdown()

        api = API(backends, backend_factory, lifespan=lifespan)

        logger.info("Starting llama-cpp-server...")
        uvicorn.run(api.app, host=config.server.host, port=config.server.port)
    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        raise
