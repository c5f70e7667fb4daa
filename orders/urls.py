from rest_framework.routers import DefaultRouter

from orders.views import OrderViewSet, PreorderViewSet

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"preorders", PreorderViewSet, basename="preorder")

urlpatterns = router.urls
