from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import ApplicationViewSet, BusinessViewSet, ShopSettingsView, UserViewSet

router = DefaultRouter()
router.register(r"businesses", BusinessViewSet, basename="business")
router.register(r"users", UserViewSet, basename="user")
router.register(r"applications", ApplicationViewSet, basename="application")

urlpatterns = router.urls + [
    path("settings/", ShopSettingsView.as_view(), name="settings"),
]
