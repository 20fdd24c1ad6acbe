# stock_api.py
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel

import stock_settings
from stock_market import NotFoundError, StockService, build_service
from stock_rollup import Granularity

logger = logging.getLogger(__name__)


class Aggregate(BaseModel):
    """
    Response payload for one historical aggregate. When a route returns a list of Aggregate,
    FastAPI serializes it into a JSON array of objects.

    :param average (float): The average price over the bucket.
    :param max (float): The maximum of the bucket's input window.
    :param min (float): The minimum of the bucket's input window.
    """
    average: float
    max: float
    min: float


def parse_ticker_list(tickers: str) -> List[str]:
    """Accepts "[AAPL,NOVO]" as well as "AAPL, NOVO"."""
    inner = tickers.strip()
    if inner.startswith("[") and inner.endswith("]"):
        inner = inner[1:-1]
    return [ticker.strip() for ticker in inner.split(",") if ticker.strip()]


def create_app(service: Optional[StockService] = None, run_scheduler: bool = True) -> FastAPI:
    """
    Builds the application around a StockService. Without an explicit service the lifespan
    creates the default one from stock_settings. With run_scheduler the background tick loop
    runs for as long as the application is up.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = build_service()
        if run_scheduler:
            app.state.service.scheduler.start()
        try:
            yield
        finally:
            if run_scheduler:
                app.state.service.scheduler.stop()

    app = FastAPI(title="Stock API", lifespan=lifespan)
    app.state.service = service

    def get_service(request: Request) -> StockService:
        return request.app.state.service

    # GET /stock/{ticker}/{interval}/{count}
    @app.get("/stock/{ticker}/{interval}/{count}", response_model=List[Aggregate])
    def get_historical_data(ticker: str, interval: str, count: int, request: Request):
        try:
            granularity = Granularity.parse(interval)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown interval: {interval}")
        try:
            records = get_service(request).get_historical_data(ticker, granularity, count)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return [Aggregate(average=r.average, max=r.max, min=r.min) for r in records]

    # GET /group/tickers/{group_name}
    @app.get("/group/tickers/{group_name}", response_model=List[str])
    def get_group_tickers(group_name: str, request: Request):
        try:
            return get_service(request).get_tickers_by_group(group_name)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    # GET /stock/nationalities/{tickers}
    @app.get("/stock/nationalities/{tickers}", response_model=Dict[str, str])
    def get_stock_nationalities(tickers: str, request: Request):
        try:
            return get_service(request).get_nationalities(parse_ticker_list(tickers))
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    # GET /search/stocks/{query}
    @app.get("/search/stocks/{query}", response_model=List[str])
    def search_stocks(query: str, request: Request):
        return get_service(request).search_tickers(query)

    return app


app = create_app()


def main():
    logging.basicConfig(level=stock_settings.LOG_LEVEL, format=stock_settings.LOG_FORMAT)
    logger.info("Serving stock API on %s:%d", stock_settings.HOST, stock_settings.PORT)
    uvicorn.run(app, host=stock_settings.HOST, port=stock_settings.PORT, log_level=stock_settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
