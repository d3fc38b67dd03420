from django.urls import path

from . import views

app_name = "tracking"

urlpatterns = [
    path("<str:code>", views.short_redirect, name="redirect"),
    path("<str:code>/preview", views.short_preview, name="preview"),
]
