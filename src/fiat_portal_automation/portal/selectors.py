from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    Econet is a server-rendered portal; ids and labels change with bank releases.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    login_logo: str = "#LogoInicialEconet"
    username_input: str = "input#usuario"
    password_input: str = "input#txtPassword"
    login_button: str = "#btn_ingresar"

    # Step-up (token/SMS) prompt shown after credentials
    step_up_input: str = "#txtClaveTrans"
    step_up_continue_button: str = 'button:has-text("Continuar")'

    # Incidental dialogs
    message_modal: str = "#modalMensaje"
    message_modal_accept: str = "#modalMensaje .modal-footer .btn.btn-primary"
    decision_modal: str = "#modalMensajeDecision"
    decision_modal_accept: str = "#botonOpcionAceptada"
    announcement_modal: str = "#modalAnuncio"
    announcement_close_icon: str = "#modalAnuncio .fa.fa-close"

    # QR generation form
    qr_origin_account: str = "#Cuenta_Origen"
    qr_destination_account: str = "#Cuenta_Destino"
    qr_details_input: str = "#glosa"
    qr_amount_input: str = "#monto"
    qr_single_use_checkbox: str = "#pagoUnico"
    qr_generate_button: str = "#GenerarQR"
    qr_download_link: str = 'a[download="QR.png"]:has-text("Descargar QR")'

    # Guided navigation to the QR form (used when the direct URL does not render the form)
    simple_qr_menu: str = 'a.dropdown-btn.menu:has-text("Simple QR")'
    simple_qr_text_fallback: str = "text=Simple QR"
    goto_generate_qr_button: str = "#btn_gotoGenerarQR"
    generate_qr_url_glob: str = "**/Transferencia/QRGenerar"

    # Movement history / receipt
    last_movement_button: str = '[data-id="mov-1"]'
    receipt_panel: str = "#cotenidoComprobante"
    receipt_memo_row: str = 'tr:has-text("Glosa")'
