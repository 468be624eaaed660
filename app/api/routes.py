from fastapi import APIRouter, Request, WebSocket

router = APIRouter()
stream_router = APIRouter()


@stream_router.get('/health')
def health():
    return {'status': 'ok'}


@stream_router.websocket('/ws')
async def relay_stream(websocket: WebSocket):
    await websocket.app.state.client_gateway.serve(websocket)


@router.get('/metrics/relay')
def relay_metrics(request: Request):
    metrics = request.app.state.connector.metrics()
    metrics.update(request.app.state.registry.metrics())
    metrics.update(request.app.state.client_gateway.metrics())
    return metrics


@router.get('/subscriptions')
def list_subscriptions(request: Request):
    registry = request.app.state.registry
    return [
        {'symbol': symbol, 'refcount': registry.refcount(symbol)}
        for symbol in sorted(registry.symbols())
    ]
