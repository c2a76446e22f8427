from fastapi import Request

from owl.service import OwlService


def get_service(request: Request) -> OwlService:
    return request.app.state.service
