import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def render_png(data: str, target_px: int = 400, border: int = 2) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    # box size so the whole image (modules + border) lands near target_px
    modules = qr.modules_count + 2 * border
    qr.box_size = max(1, target_px // modules)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_data_url(data: str) -> str:
    png = render_png(data)
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")
