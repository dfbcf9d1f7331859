from .analytics import router as analytics_router
from .enrollments import router as enrollments_router
from .payments import router as payments_router
from .subscriptions import router as subscriptions_router

routes = [
    enrollments_router,
    subscriptions_router,
    payments_router,
    analytics_router,
]
