from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import CatalogView, ProductViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")

urlpatterns = router.urls + [
    path("catalog/", CatalogView.as_view(), name="catalog"),
]
