from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/", include("campaign.urls")),
    path("api/audience/", include("audience.urls")),
    path("webhooks/", include("providers.urls")),
    path("s/", include("tracking.urls")),
]
