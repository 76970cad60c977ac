from fastapi import Depends, FastAPI

from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.interface_adapters.health_controller import HealthController
from llama_cpp_server.interface_adapters.inference_controller import InferenceController
from llama_cpp_server.use_cases.get_health import GetHealth, SupervisorSource


class API:
    def __init__(self, backends: dict[WorkloadKind, object], supervisor_source: SupervisorSource, lifespan=None):
        self.backends = backends
        self.supervisor_source = supervisor_source
        self.app = FastAPI(title="llama-cpp-server", version="0.1.0", lifespan=lifespan)

        self.get_inference_controller = lambda: InferenceController(self.backends)
        self.get_health_controller = lambda: HealthController(GetHealth(self.supervisor_source))

        self._register_routes()

    def _register_routes(self):
        async def embeddings_handler(request: dict, controller=Depends(self.get_inference_controller)):
            return await controller.embeddings(request)

        async def completions_handler(request: dict, controller=Depends(self.get_inference_controller)):
            return await controller.completions(request)

        async def chat_completions_handler(request: dict, controller=Depends(self.get_inference_controller)):
            return await controller.chat_completions(request)

        def health_handler(controller=Depends(self.get_health_controller)):
            return controller.health()

        self.app.post("/v1/embeddings")(embeddings_handler)
        self.app.post("/v1/completions")(completions_handler)
        self.app.post("/v1/chat/completions")(chat_completions_handler)
        self.app.get("/health")(health_handler)
