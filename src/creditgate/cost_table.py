"""Seed cost table for the action cost registry.

One row per canonical action: ``(key, display_name, cost, category)``.
Zero cost means free; there is no separate free-action list. Legacy
names live in ``LEGACY_ALIASES`` and resolve to a canonical key so a
price change only ever touches one row.
"""

from __future__ import annotations

# Free tier: these actions are unavailable regardless of balance.
BLOCKED_ON_FREE_TIER: frozenset[str] = frozenset({
    "route_optimization",
    "send_bulk_sms",
    "report_schedule",
    "custom_report_run",
    "report_custom_generate",
})

# Bulk/export-class work that must be affordable up front, plus a buffer.
REQUIRES_FULL_BALANCE: frozenset[str] = frozenset({
    "send_bulk_sms",
    "send_bulk_email",
    "data_warehouse_export",
    "custom_report_run",
    "report_custom_generate",
    "report_advanced_generate",
    "ai_insight_generate",
    "ai_task_run",
    "ai_suggestions",
    "menu_ocr",
})

# Free-tier counter each action counts toward. Unlisted actions count
# toward their category.
QUOTA_GROUPS: dict[str, str] = {
    "menu_create": "menu_creations",
    "order_create_manual": "manual_orders",
    "send_sms": "sms",
    "send_bulk_sms": "sms",
    "send_email": "emails",
    "send_bulk_email": "emails",
    "pos_process_sale": "pos_sales",
    "bulk_operation_execute": "bulk_operations",
    "product_bulk_import": "bulk_operations",
    "stock_bulk_update": "bulk_operations",
    "marketplace_bulk_update": "bulk_operations",
    "customer_import": "bulk_operations",
    "invoice_create": "invoice_creations",
    "report_custom_generate": "custom_reports",
    "custom_report_run": "custom_reports",
    "report_advanced_generate": "custom_reports",
    "ai_insight_generate": "ai_features",
    "ai_task_run": "ai_features",
    "ai_suggestions": "ai_features",
    "menu_ocr": "ai_features",
}

LEGACY_ALIASES: dict[str, str] = {
    "create_order": "order_create_manual",
    "add_product": "product_add",
    "add_customer": "customer_add",
    "generate_invoice": "invoice_create",
    "send_menu_link": "menu_share_link",
    "generate_report": "report_custom_generate",
    "update_inventory": "stock_update",
    "create_delivery_route": "route_optimize",
}

ACTION_COSTS: tuple[tuple[str, str, int, str], ...] = (
    ("dashboard_view", "View Dashboard", 0, "command_center"),
    ("hotbox_view", "View Hotbox", 0, "command_center"),
    ("live_orders_view", "View Live Orders", 0, "command_center"),
    ("live_orders_process", "Process Live Order", 0, "command_center"),
    ("realtime_monitor_view", "Real-Time Monitor", 0, "command_center"),
    ("live_map_view", "View Live Map", 0, "command_center"),
    ("orders_view", "View Orders", 0, "orders"),
    ("order_create_manual", "Create Manual Order", 50, "orders"),
    ("order_export", "Export Orders", 0, "exports"),
    ("order_update_status", "Update Order Status", 0, "orders"),
    ("order_cancel", "Cancel Order", 0, "orders"),
    ("menu_view", "Menu View", 2, "menus"),
    ("menu_create", "Create Menu", 100, "menus"),
    ("menu_edit", "Edit Menu", 0, "menus"),
    ("menu_order_received", "Order Received", 75, "orders"),
    ("menu_share_link", "Share Menu Link", 0, "menus"),
    ("menu_import_catalog", "Import Catalog", 50, "menus"),
    ("wholesale_view", "View Wholesale", 0, "wholesale"),
    ("wholesale_order_place", "Place Wholesale Order", 100, "wholesale"),
    ("wholesale_order_receive", "Receive Wholesale Order", 75, "wholesale"),
    ("loyalty_view", "View Loyalty Program", 0, "loyalty"),
    ("loyalty_reward_create", "Create Reward", 25, "loyalty"),
    ("loyalty_reward_issue", "Issue Reward", 15, "loyalty"),
    ("coupon_view", "View Coupons", 0, "coupons"),
    ("coupon_create", "Create Coupon", 20, "coupons"),
    ("coupon_redeemed", "Coupon Redeemed", 5, "coupons"),
    ("marketplace_browse", "Browse Marketplace", 0, "marketplace"),
    ("marketplace_list_product", "List Product", 25, "marketplace"),
    ("marketplace_order_created", "Marketplace Order Received", 100, "marketplace"),
    ("marketplace_notification_sent", "Marketplace Notification", 50, "marketplace"),
    ("marketplace_coupon_created", "Create Marketplace Coupon", 25, "marketplace"),
    ("marketplace_bulk_update", "Bulk Product Update", 100, "marketplace"),
    ("marketplace_export_orders", "Export Marketplace Orders", 0, "marketplace"),
    ("marketplace_store_view", "View Store Settings", 0, "marketplace"),
    ("storefront_create", "Create Storefront", 500, "marketplace"),
    ("pos_view", "View POS", 0, "pos"),
    ("pos_process_sale", "Process Sale", 25, "pos"),
    ("pos_open_close_drawer", "Open/Close Drawer", 0, "pos"),
    ("pos_apply_discount", "Apply Discount", 0, "pos"),
    ("pos_print_receipt", "Print Receipt", 5, "pos"),
    ("product_view", "View Products", 0, "inventory"),
    ("product_add", "Add Product", 10, "inventory"),
    ("product_edit", "Edit Product", 0, "inventory"),
    ("product_delete", "Delete Product", 0, "inventory"),
    ("product_bulk_import", "Bulk Import Products", 50, "inventory"),
    ("stock_view", "View Stock", 0, "inventory"),
    ("stock_update", "Update Stock", 3, "inventory"),
    ("stock_bulk_update", "Bulk Update Stock", 25, "inventory"),
    ("alert_view", "View Alerts", 0, "inventory"),
    ("alert_configure", "Configure Alert", 0, "inventory"),
    ("alert_triggered", "Alert Triggered", 10, "inventory"),
    ("barcode_view", "View Barcodes", 0, "inventory"),
    ("barcode_generate", "Generate Barcode", 5, "inventory"),
    ("barcode_print_batch", "Print Barcode Batch", 25, "inventory"),
    ("transfer_view", "View Transfers", 0, "inventory"),
    ("transfer_create", "Create Transfer", 20, "inventory"),
    ("receiving_view", "View Receiving", 0, "inventory"),
    ("receiving_log", "Log Received Inventory", 10, "inventory"),
    ("dispatch_view", "View Dispatch", 0, "inventory"),
    ("dispatch_create", "Create Dispatch", 20, "inventory"),
    ("vendor_view", "View Vendors", 0, "inventory"),
    ("vendor_add", "Add Vendor", 5, "inventory"),
    ("customer_view", "View Customers", 0, "customers"),
    ("customer_add", "Add Customer", 5, "customers"),
    ("customer_edit", "Edit Customer", 0, "customers"),
    ("customer_import", "Import Customers", 50, "customers"),
    ("customer_export", "Export Customers", 0, "exports"),
    ("crm_view", "View CRM", 0, "crm"),
    ("crm_log_interaction", "Log Interaction", 5, "crm"),
    ("send_sms", "Send SMS", 25, "crm"),
    ("send_bulk_sms", "Send Bulk SMS", 20, "crm"),
    ("send_email", "Send Email", 10, "crm"),
    ("send_bulk_email", "Send Bulk Email", 8, "crm"),
    ("live_chat_view", "View Live Chat", 0, "crm"),
    ("live_chat_message", "Send Chat Message", 5, "crm"),
    ("who_owes_me_view", "View Who Owes Me", 0, "crm"),
    ("who_owes_me_reminder", "Send Payment Reminder", 25, "crm"),
    ("invoice_view", "View Invoices", 0, "invoices"),
    ("invoice_create", "Create Invoice", 50, "invoices"),
    ("invoice_send", "Send Invoice", 25, "invoices"),
    ("invoice_export", "Export Invoices", 0, "exports"),
    ("supplier_view", "View Suppliers", 0, "operations"),
    ("supplier_add", "Add Supplier", 5, "operations"),
    ("purchase_order_view", "View Purchase Orders", 0, "operations"),
    ("purchase_order_create", "Create Purchase Order", 30, "operations"),
    ("purchase_order_send", "Send Purchase Order", 25, "operations"),
    ("return_view", "View Returns", 0, "operations"),
    ("return_process", "Process Return", 15, "operations"),
    ("qc_view", "View Quality Control", 0, "operations"),
    ("qc_log_check", "Log QC Check", 10, "operations"),
    ("appointment_view", "View Appointments", 0, "operations"),
    ("appointment_create", "Create Appointment", 10, "operations"),
    ("appointment_reminder", "Send Appointment Reminder", 25, "operations"),
    ("support_ticket_create", "Create Support Ticket", 0, "operations"),
    ("delivery_view", "View Deliveries", 0, "delivery"),
    ("delivery_create", "Create Delivery", 30, "delivery"),
    ("delivery_mark_complete", "Mark Delivered", 0, "delivery"),
    ("fleet_view", "View Fleet", 0, "delivery"),
    ("route_optimization", "Optimize Route", 1, "delivery"),
    ("fleet_add_vehicle", "Add Vehicle", 0, "fleet"),
    ("courier_view", "View Couriers", 0, "fleet"),
    ("courier_add", "Add Courier", 0, "fleet"),
    ("courier_assign_delivery", "Assign Delivery", 10, "fleet"),
    ("route_view", "View Routes", 0, "fleet"),
    ("route_optimize", "Optimize Route", 50, "fleet"),
    ("tracking_view", "View Tracking", 0, "fleet"),
    ("tracking_ping", "Location Ping", 1, "fleet"),
    ("tracking_send_link", "Send Tracking Link", 15, "fleet"),
    ("analytics_view", "View Analytics", 0, "analytics"),
    ("report_standard_view", "View Standard Reports", 0, "reports"),
    ("report_custom_generate", "Generate Custom Report", 75, "reports"),
    ("report_export", "Export Report", 0, "exports"),
    ("report_schedule", "Schedule Report", 50, "reports"),
    ("report_advanced_generate", "Generate Advanced Report", 100, "reports"),
    ("commission_view", "View Commissions", 0, "analytics"),
    ("commission_calculate", "Calculate Commissions", 30, "analytics"),
    ("expense_view", "View Expenses", 0, "analytics"),
    ("expense_add", "Add Expense", 5, "analytics"),
    ("forecast_view", "View Forecast", 0, "analytics"),
    ("forecast_run", "Run Forecast", 75, "analytics"),
    ("custom_report_view", "View Custom Reports", 0, "reports"),
    ("custom_report_run", "Run Custom Report", 100, "reports"),
    ("data_warehouse_view", "View Data Warehouse", 0, "analytics"),
    ("data_warehouse_query", "Query Data Warehouse", 25, "analytics"),
    ("data_warehouse_export", "Export from Data Warehouse", 200, "exports"),
    ("ai_view", "View AI Analytics", 0, "ai"),
    ("ai_insight_generate", "Generate AI Insight", 50, "ai"),
    ("ai_task_run", "Run AI Task", 50, "ai"),
    ("menu_ocr", "Menu OCR Scan", 250, "ai"),
    ("ai_suggestions", "AI Suggestions", 100, "ai"),
    ("webhook_view", "View Webhooks", 0, "integrations"),
    ("webhook_fired", "Webhook Fired", 5, "integrations"),
    ("api_call", "API Call", 5, "api"),
    ("bulk_operation_execute", "Bulk Operation", 0, "integrations"),
    ("batch_recall_view", "View Batch Recall", 0, "compliance"),
    ("batch_recall_initiate", "Initiate Batch Recall", 0, "compliance"),
    ("compliance_vault_view", "View Compliance Vault", 0, "compliance"),
    ("compliance_vault_upload", "Upload to Vault", 0, "compliance"),
    ("compliance_report_generate", "Generate Compliance Report", 100, "compliance"),
    ("audit_logs_view", "View Audit Logs", 0, "compliance"),
    ("settings_view", "View Settings", 0, "command_center"),
    ("team_manage", "Manage Team", 0, "command_center"),
    ("roles_manage", "Manage Roles", 0, "command_center"),
    ("permissions_manage", "Manage Permissions", 0, "command_center"),
    ("locations_manage", "Manage Locations", 0, "command_center"),
    ("export_csv", "Export to CSV", 0, "exports"),
    ("export_pdf", "Export to PDF", 0, "exports"),
)
