"""
Query API

FastAPI service for reading recent dollar imbalance bars from TimescaleDB.

HTTP Endpoints:
- GET  /         - Dashboard (chart of recent bars)
- GET  /health   - Detailed health status
- GET  /bars     - Most recent bars, timestamp descending
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
import uvicorn

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))))

from dataflow.persistence.store import TimescaleDBStore
from engine.config.loader import DEFAULT_DATABASE_URL, database_url_from_env

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


DEFAULT_BAR_LIMIT = 50


# Response models (Pydantic)
class BarResponse(BaseModel):
    """Single imbalance bar"""
    timestamp: int  # epoch millis of the triggering trade
    dollar_imbalance: float
    threshold_reached: bool


# Global bar store
bar_store: Optional[TimescaleDBStore] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for database connection"""
    global bar_store

    # Startup
    logger.info("Starting Query API...")

    store = TimescaleDBStore(database_url_from_env(os.environ) or DEFAULT_DATABASE_URL)
    try:
        await store.connect_db()
        bar_store = store
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        bar_store = None

    yield

    # Shutdown
    if bar_store:
        await bar_store.close_db()
    logger.info("Query API shutdown complete")


app = FastAPI(
    title="Dollar Imbalance Bars - Query API",
    description="Query recent dollar imbalance bars",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Detailed health status"""
    return {
        "status": "healthy",
        "service": "query-api",
        "database_connected": bar_store is not None and bar_store.is_connected,
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/bars", response_model=list[BarResponse])
async def get_bars(
    limit: int = Query(default=DEFAULT_BAR_LIMIT, ge=1, le=1000, description="Number of bars to fetch")
) -> list[BarResponse]:
    """
    Fetch the most recent N bars.

    Returns:
        Bars ordered by timestamp descending (most recent first)

    Raises:
        503: Database unavailable
        500: Query failed
    """
    if bar_store is None or not bar_store.is_connected:
        raise HTTPException(
            status_code=503,
            detail="Database connection unavailable"
        )

    try:
        bars = await bar_store.recent_bars(limit)
    except Exception as e:
        logger.error(f"Database query failed: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Database query failed: {str(e)}"
        )

    logger.debug(f"Fetched {len(bars)} bars (limit={limit})")

    return [BarResponse(**bar.to_dict()) for bar in bars]


DASHBOARD_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Dollar Imbalance Dashboard</title>
    <script src="https://cdn.jsdelivr.net/npm/chart.js"></script>
</head>
<body>
    <h1>Dollar Imbalance Bars</h1>
    <canvas id="chart" width="800" height="400"></canvas>
    <script>
        let chart = null;

        async function fetchBars() {
            const response = await fetch('/bars');
            if (!response.ok) {
                return [];
            }
            return response.json();
        }

        async function renderChart() {
            const bars = (await fetchBars()).reverse();
            const labels = bars.map(bar => new Date(bar.timestamp).toLocaleTimeString());
            const data = bars.map(bar => bar.dollar_imbalance);

            if (chart) {
                chart.data.labels = labels;
                chart.data.datasets[0].data = data;
                chart.update();
                return;
            }

            chart = new Chart(document.getElementById('chart').getContext('2d'), {
                type: 'bar',
                data: {
                    labels: labels,
                    datasets: [{
                        label: 'Dollar Imbalance',
                        data: data,
                        backgroundColor: 'rgba(75, 192, 192, 0.2)',
                        borderColor: 'rgba(75, 192, 192, 1)',
                        borderWidth: 1
                    }]
                },
                options: {
                    scales: {
                        y: { beginAtZero: true }
                    }
                }
            });
        }

        renderChart();
        setInterval(renderChart, 5000); // Refresh every 5 seconds
    </script>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def dashboard():
    """Dashboard rendering the most recent bars"""
    return DASHBOARD_HTML


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")

    uvicorn.run(app, host=host, port=port)
