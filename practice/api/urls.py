from django.urls import include, path
from rest_framework.routers import DefaultRouter
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

from practice.api import views

router = DefaultRouter()
router.register('clients', views.ClientViewSet, basename='client')
router.register('task-templates', views.TaskTemplateViewSet, basename='task-template')
router.register('tasks', views.TaskViewSet, basename='task')
router.register('invoices', views.InvoiceViewSet, basename='invoice')
router.register('communication-logs', views.CommunicationLogViewSet, basename='communication-log')
router.register('notifications', views.NotificationViewSet, basename='notification')
router.register('automation-runs', views.AutomationRunViewSet, basename='automation-run')

urlpatterns = [
    path('auth/token/', views.CustomTokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/refresh/', views.CustomTokenRefreshView.as_view(), name='token_refresh'),
    path('automation-settings/', views.AutomationSettingsView.as_view(), name='automation-settings'),
    path('schema/', SpectacularAPIView.as_view(), name='schema'),
    path('docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('', include(router.urls)),
]
