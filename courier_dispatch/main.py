import asyncio
import logging
from quart import Quart
from quart_cors import cors
from sqlalchemy import text
from courier_dispatch.config.settings import Config
from courier_dispatch.core.db_config import DatabaseConfig, create_session_factory, create_tables
from courier_dispatch.core.jwt import JWTConfig
from courier_dispatch.middleware.logger import setup_logger
from courier_dispatch.routes.orders_routes import init_order_routes
from courier_dispatch.routes.couriers_routes import init_courier_routes
from courier_dispatch.routes.assignments_routes import init_assignment_routes
from courier_dispatch.services.assignment_engine import AssignmentEngine
from courier_dispatch.services.courier_service import CourierService
from courier_dispatch.services.notification_service import NotificationService
from courier_dispatch.services.order_service import OrderService

logger = logging.getLogger(__name__)


def create_app(config: Config, session_factory, engine: AssignmentEngine = None) -> Quart:
    app = Quart(__name__)
    app = cors(app, allow_origin=config.ALLOWED_ORIGINS)

    jwt_config = JWTConfig(config)
    engine = engine or AssignmentEngine.from_config(config, session_factory)
    courier_service = CourierService(session_factory, default_rating=config.DEFAULT_COURIER_RATING)
    app.config["ASSIGNMENT_ENGINE"] = engine

    @app.route('/api/v1/health', methods=['GET'])
    async def health_check():
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
            return {"status": "healthy", "database": "connected"}, 200
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}", exc_info=True)
            return {"status": "unhealthy", "database": "disconnected"}, 500

    app.register_blueprint(init_order_routes(engine.order_service, engine, jwt_config))
    app.register_blueprint(init_courier_routes(courier_service, engine.ledger, jwt_config))
    app.register_blueprint(init_assignment_routes(engine, jwt_config))
    return app


async def main():
    config = Config()
    setup_logger(config.LOG_LEVEL, config.LOG_FILE)

    db_config = DatabaseConfig(config)
    db_engine = db_config.create_engine()
    try:
        await create_tables(db_engine)
        logger.info("Database connected and tables created")
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}", exc_info=True)
        raise
    session_factory = create_session_factory(db_engine)

    notifications = NotificationService()
    engine = AssignmentEngine.from_config(config, session_factory, notifications=notifications)
    app = create_app(config, session_factory, engine)

    # Start background expiry sweep
    sweeper = asyncio.create_task(engine.run_expiry_sweeper(config.EXPIRY_SWEEP_INTERVAL_SECONDS))

    logger.info(f"Quart server starting on {config.HOST}:{config.PORT}")
    from hypercorn.config import Config as HypercornConfig
    from hypercorn.asyncio import serve

    hypercorn_config = HypercornConfig()
    hypercorn_config.bind = [f"{config.HOST}:{config.PORT}"]
    hypercorn_config.loglevel = config.LOG_LEVEL.lower()

    try:
        await serve(app, hypercorn_config)
    finally:
        sweeper.cancel()
        await notifications.drain()
        await db_engine.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server shutdown initiated")
    except Exception as e:
        logger.error(f"Server failed to start: {str(e)}", exc_info=True)
        raise
