from fastapi import Request

from service.file_service import FileLifecycleCoordinator


def get_coordinator(request: Request) -> FileLifecycleCoordinator:
    """lifespan에서 만든 FileLifecycleCoordinator를 꺼낸다.

    테스트에서는 app.dependency_overrides로 교체한다.
    """
    return request.app.state.coordinator
