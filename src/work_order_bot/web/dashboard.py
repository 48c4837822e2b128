"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Work Orders</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --high: #e74c3c; --medium: #f39c12; --low: #2ecc71;
    --open: #58a6ff; --done: #3fb950; --cancelled: #8b949e;
    --accent: #58a6ff; --link: #58a6ff;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center; gap: 12px;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; flex-wrap: wrap; }
  header h1 { font-size: 20px; font-weight: 600; }
  input, select, button { background: var(--surface); color: var(--text); border: 1px solid var(--border);
                          padding: 6px 10px; border-radius: 6px; font-size: 13px; }
  button { cursor: pointer; }
  button:hover { border-color: var(--text-muted); }
  button.danger { color: var(--high); }

  .identity { display: flex; gap: 8px; flex-wrap: wrap; }
  .tabs { display: flex; gap: 8px; margin-bottom: 16px; }
  .tabs button.active { border-color: var(--accent); color: var(--accent); }

  .toolbar { display: flex; justify-content: space-between; align-items: center;
             margin-bottom: 16px; font-size: 12px; color: var(--text-dim); gap: 8px; flex-wrap: wrap; }

  .wo-list { display: flex; flex-direction: column; gap: 4px; }
  .wo-card { background: var(--surface); border: 1px solid var(--border); border-left: 4px solid var(--border);
             border-radius: 8px; padding: 12px 16px; }
  .wo-card.HIGH { border-left-color: var(--high); }
  .wo-card.MEDIUM { border-left-color: var(--medium); }
  .wo-card.LOW { border-left-color: var(--low); }
  .wo-header { display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.OPEN { background: rgba(88,166,255,0.15); color: var(--open); }
  .badge.DONE { background: rgba(63,185,80,0.15); color: var(--done); }
  .badge.CANCELLED { background: rgba(139,148,158,0.15); color: var(--cancelled); }
  .wo-title { font-weight: 600; font-size: 14px; }
  .wo-id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .wo-details { margin-top: 6px; font-size: 13px; color: var(--text-muted); display: flex;
                flex-direction: column; gap: 3px; }
  .wo-details a { color: var(--link); text-decoration: none; }
  .wo-actions { margin-top: 8px; display: flex; gap: 6px; }

  table { width: 100%; border-collapse: collapse; font-size: 13px; }
  th, td { text-align: left; padding: 8px; border-bottom: 1px solid var(--border); }
  th { color: var(--text-muted); font-weight: 600; }

  h2 { font-size: 15px; font-weight: 600; margin: 24px 0 12px; }
  textarea { background: var(--surface); color: var(--text); border: 1px solid var(--border);
             padding: 6px 10px; border-radius: 6px; font-size: 13px; font-family: inherit; }
  .form { display: flex; flex-direction: column; gap: 10px; margin-bottom: 20px; max-width: 520px; }
  .form label { display: flex; flex-direction: column; gap: 4px; font-size: 12px; color: var(--text-muted); }
  .form.inline { flex-direction: row; flex-wrap: wrap; max-width: none; margin-top: 12px; }

  .error { color: var(--high); font-size: 13px; margin-bottom: 12px; min-height: 18px; }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Work Orders</h1>
    <div class="identity">
      <input id="guild" placeholder="Workspace ID">
      <input id="user" placeholder="Your user ID">
      <input id="roles" placeholder="Role IDs (comma separated)">
      <button onclick="saveIdentity()">Load</button>
    </div>
  </header>

  <div class="tabs">
    <button id="tab-orders" class="active" onclick="showTab('orders')">Work Orders</button>
    <button id="tab-create" onclick="showTab('create')">New</button>
    <button id="tab-usage" onclick="showTab('usage')">Usage</button>
    <button id="tab-admin" onclick="showTab('admin')">Admin</button>
  </div>

  <div class="error" id="error"></div>

  <section id="orders">
    <div class="toolbar">
      <select id="status" onchange="loadOrders(1)">
        <option value="OPEN">Open</option>
        <option value="DONE">Done</option>
        <option value="CANCELLED">Cancelled</option>
        <option value="ALL">All</option>
      </select>
      <span id="page-info"></span>
      <span>
        <button id="prev" onclick="loadOrders(page - 1)">Previous</button>
        <button id="next" onclick="loadOrders(page + 1)">Next</button>
      </span>
    </div>
    <div class="wo-list" id="wo-list"></div>
  </section>

  <section id="detail" style="display:none">
    <div class="toolbar">
      <button onclick="showTab('orders')">Back</button>
      <span class="wo-id" id="detail-id"></span>
    </div>
    <div class="form">
      <label>Title <input id="edit-title"></label>
      <label>Subsystem <select id="edit-subsystem" class="subsystem-select"></select></label>
      <label>Priority
        <select id="edit-priority"><option>HIGH</option><option>MEDIUM</option><option>LOW</option></select>
      </label>
      <label>Description <textarea id="edit-description" rows="3"></textarea></label>
      <label>CAD link <input id="edit-cad"></label>
      <span><button onclick="saveEdit()">Save changes</button></span>
    </div>
    <div class="form">
      <label>Assign to (user ID) <input id="assign-user"></label>
      <span>
        <button onclick="assignOrder()">Assign</button>
        <button class="danger" onclick="removeOrder()">Remove</button>
      </span>
    </div>
    <table>
      <thead><tr><th>When</th><th>Action</th><th>Details</th></tr></thead>
      <tbody id="history-rows"></tbody>
    </table>
  </section>

  <section id="create" style="display:none">
    <div class="form">
      <label>Title <input id="new-title"></label>
      <label>Subsystem <select id="new-subsystem" class="subsystem-select"></select></label>
      <label>Priority
        <select id="new-priority"><option>MEDIUM</option><option>HIGH</option><option>LOW</option></select>
      </label>
      <label>Description <textarea id="new-description" rows="3"></textarea></label>
      <label>CAD link <input id="new-cad"></label>
      <span><button onclick="createOrder()">Create work order</button></span>
    </div>
  </section>

  <section id="usage" style="display:none">
    <table>
      <thead><tr><th>Member</th><th>Completed</th><th>Claimed</th></tr></thead>
      <tbody id="usage-rows"></tbody>
    </table>
  </section>

  <section id="admin" style="display:none">
    <h2>Workspace settings</h2>
    <div class="form">
      <label>Admin role IDs <input id="cfg-admins" placeholder="comma separated"></label>
      <label>Member role IDs <input id="cfg-members" placeholder="comma separated"></label>
      <label>Work order channel <input id="cfg-channel"></label>
      <label>Timezone <input id="cfg-timezone"></label>
      <span><button onclick="saveConfig()">Save settings</button></span>
    </div>

    <h2>Subsystems</h2>
    <table>
      <thead><tr><th></th><th>Name</th><th>Display name</th><th></th></tr></thead>
      <tbody id="subsystem-rows"></tbody>
    </table>
    <div class="form inline">
      <input id="sub-name" placeholder="NAME">
      <input id="sub-display" placeholder="Display name">
      <input id="sub-emoji" placeholder="Emoji" size="4">
      <input id="sub-color" type="color" value="#808080">
      <button onclick="addSubsystem()">Add</button>
    </div>

    <h2>Retention</h2>
    <div class="toolbar">
      <span>Clear finished work orders. They can be recovered until the next sweep.</span>
      <span>
        <button onclick="clearOrders(['DONE'])">Clear done</button>
        <button onclick="clearOrders(['CANCELLED'])">Clear cancelled</button>
        <button onclick="recoverOrders()">Recover</button>
      </span>
    </div>
    <div id="admin-info" class="wo-details"></div>
  </section>
</div>

<script>
let page = 1;

function ident() {
  return {
    guild: localStorage.getItem('wo.guild') || '',
    user: localStorage.getItem('wo.user') || '',
    roles: localStorage.getItem('wo.roles') || '',
  };
}

function saveIdentity() {
  localStorage.setItem('wo.guild', document.getElementById('guild').value.trim());
  localStorage.setItem('wo.user', document.getElementById('user').value.trim());
  localStorage.setItem('wo.roles', document.getElementById('roles').value.trim());
  loadOrders(1);
}

async function api(method, path, body) {
  const id = ident();
  const headers = { 'X-User-Id': id.user, 'X-User-Roles': id.roles };
  const token = localStorage.getItem('wo.token');
  if (token) headers['Authorization'] = 'Bearer ' + token;
  if (body !== undefined) headers['Content-Type'] = 'application/json';
  const resp = await fetch(path, { method, headers, body: body === undefined ? undefined : JSON.stringify(body) });
  const data = await resp.json().catch(() => ({}));
  if (!resp.ok) throw new Error(data.error || resp.statusText);
  return data;
}

function showError(e) { document.getElementById('error').textContent = e ? e.message : ''; }

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s == null ? '' : String(s);
  return d.innerHTML;
}

function showTab(name) {
  for (const t of ['orders', 'detail', 'create', 'usage', 'admin']) {
    document.getElementById(t).style.display = t === name ? '' : 'none';
    const tab = document.getElementById('tab-' + t);
    if (tab) tab.classList.toggle('active', t === name);
  }
  if (name === 'orders') loadOrders(page);
  if (name === 'create') loadSubsystems();
  if (name === 'usage') loadUsage();
  if (name === 'admin') loadAdmin();
}

function renderOrder(wo) {
  const sub = wo.subsystem ? (wo.subsystem.emoji + ' ' + wo.subsystem.display_name) : 'Unknown';
  const details = [];
  details.push('<div>' + esc(sub) + ' &middot; ' + esc(wo.priority) + '</div>');
  if (wo.description) details.push('<div>' + esc(wo.description) + '</div>');
  if (wo.claimed_by) details.push('<div>Claimed by ' + esc(wo.claimed_by) + '</div>');
  if (wo.assigned_to) details.push('<div>Assigned to ' + esc(wo.assigned_to) + '</div>');
  if (wo.cad_link) details.push('<div><a href="' + esc(wo.cad_link) + '" target="_blank">CAD</a></div>');

  const actions = [];
  if (wo.status === 'OPEN') {
    if (!wo.claimed_by_user_id) actions.push(['claim', 'Claim']);
    else actions.push(['unclaim', 'Unclaim'], ['finish', 'Mark Done']);
    actions.push(['cancel', 'Cancel']);
  }
  const buttons = actions.map(([a, label]) =>
    '<button onclick="transition(\\'' + wo.id + '\\', \\'' + a + '\\')">' + label + '</button>').join('') +
    '<button onclick="openOrder(\\'' + wo.id + '\\')">Details</button>';

  return '<div class="wo-card ' + esc(wo.priority) + '">' +
    '<div class="wo-header"><span class="badge ' + esc(wo.status) + '">' + esc(wo.display_status) + '</span>' +
    '<span class="wo-title">' + esc(wo.title) + '</span><span class="wo-id">' + esc(wo.id) + '</span></div>' +
    '<div class="wo-details">' + details.join('') + '</div>' +
    (buttons ? '<div class="wo-actions">' + buttons + '</div>' : '') + '</div>';
}

async function loadOrders(p) {
  const id = ident();
  if (!id.guild || !id.user) return;
  page = Math.max(1, p);
  const status = document.getElementById('status').value;
  try {
    const data = await api('GET', '/api/guilds/' + encodeURIComponent(id.guild) +
      '/workorders?status=' + status + '&page=' + page);
    const list = document.getElementById('wo-list');
    list.innerHTML = data.items.length
      ? data.items.map(renderOrder).join('')
      : '<div class="empty"><h3>No work orders</h3></div>';
    document.getElementById('page-info').textContent = 'Page ' + data.page;
    document.getElementById('prev').disabled = page <= 1;
    document.getElementById('next').disabled = !data.has_more;
    showError(null);
  } catch (e) { showError(e); }
}

async function transition(woId, action) {
  try {
    await api('POST', '/api/workorders/' + encodeURIComponent(woId) + '/' + action);
    loadOrders(page);
  } catch (e) { showError(e); }
}

async function loadUsage() {
  const id = ident();
  try {
    const rows = await api('GET', '/api/guilds/' + encodeURIComponent(id.guild) + '/usage');
    document.getElementById('usage-rows').innerHTML = rows.map(r =>
      '<tr><td>' + esc(r.display_name) + '</td><td>' + r.completed_count + '</td><td>' +
      r.claimed_count + '</td></tr>').join('');
    showError(null);
  } catch (e) { showError(e); }
}

async function clearOrders(statuses) {
  const id = ident();
  try {
    const data = await api('POST', '/api/guilds/' + encodeURIComponent(id.guild) + '/clear', { statuses });
    document.getElementById('admin-info').textContent = 'Cleared ' + data.cleared +
      (data.recoverable_until ? '. Recoverable until ' + data.recoverable_until + ' UTC.' : '.');
    showError(null);
  } catch (e) { showError(e); }
}

async function recoverOrders() {
  const id = ident();
  try {
    const data = await api('POST', '/api/guilds/' + encodeURIComponent(id.guild) + '/recover');
    document.getElementById('admin-info').textContent = 'Recovered ' + data.recovered + '.';
    showError(null);
  } catch (e) { showError(e); }
}

let currentOrder = null;
let subsystems = [];

function guildPath(suffix) {
  return '/api/guilds/' + encodeURIComponent(ident().guild) + suffix;
}

function value(id) { return document.getElementById(id).value.trim(); }

function splitIds(text) { return text.split(',').map(s => s.trim()).filter(Boolean); }

async function loadSubsystems() {
  try {
    subsystems = await api('GET', guildPath('/subsystems'));
    const options = subsystems.map(s =>
      '<option value="' + s.id + '">' + esc(s.emoji + ' ' + s.display_name) + '</option>').join('');
    for (const select of document.querySelectorAll('.subsystem-select')) select.innerHTML = options;
  } catch (e) { showError(e); }
  return subsystems;
}

async function createOrder() {
  try {
    const wo = await api('POST', guildPath('/workorders'), {
      title: value('new-title'),
      subsystem_id: Number(value('new-subsystem')),
      priority: value('new-priority'),
      description: value('new-description'),
      cad_link: value('new-cad') || null,
    });
    for (const id of ['new-title', 'new-description', 'new-cad']) document.getElementById(id).value = '';
    showError(null);
    openOrder(wo.id);
  } catch (e) { showError(e); }
}

async function openOrder(woId) {
  showTab('detail');
  await loadSubsystems();
  try {
    const wo = await api('GET', '/api/workorders/' + encodeURIComponent(woId));
    currentOrder = wo;
    document.getElementById('detail-id').textContent = wo.id + ' (' + wo.display_status + ')';
    document.getElementById('edit-title').value = wo.title;
    document.getElementById('edit-subsystem').value = String(wo.subsystem_id);
    document.getElementById('edit-priority').value = wo.priority;
    document.getElementById('edit-description').value = wo.description || '';
    document.getElementById('edit-cad').value = wo.cad_link || '';
    document.getElementById('history-rows').innerHTML = wo.history.map(h =>
      '<tr><td>' + esc(h.created_at) + '</td><td>' + esc(h.action) + '</td><td>' +
      esc(JSON.stringify(h.meta)) + '</td></tr>').join('');
    showError(null);
  } catch (e) { showError(e); }
}

async function saveEdit() {
  if (!currentOrder) return;
  const fields = {
    title: value('edit-title'),
    subsystem_id: Number(value('edit-subsystem')),
    priority: value('edit-priority'),
    description: value('edit-description'),
    cad_link: value('edit-cad'),
  };
  const before = {
    title: currentOrder.title,
    subsystem_id: currentOrder.subsystem_id,
    priority: currentOrder.priority,
    description: currentOrder.description || '',
    cad_link: currentOrder.cad_link || '',
  };
  const changes = {};
  for (const key of Object.keys(fields)) {
    if (fields[key] !== before[key]) changes[key] = fields[key];
  }
  if (!Object.keys(changes).length) { showError(new Error('Nothing to save')); return; }
  try {
    await api('PATCH', '/api/workorders/' + encodeURIComponent(currentOrder.id), changes);
    openOrder(currentOrder.id);
  } catch (e) { showError(e); }
}

async function assignOrder() {
  if (!currentOrder) return;
  try {
    await api('POST', '/api/workorders/' + encodeURIComponent(currentOrder.id) + '/assign',
      { assignee_external_id: value('assign-user') });
    openOrder(currentOrder.id);
  } catch (e) { showError(e); }
}

async function removeOrder() {
  if (!currentOrder || !confirm('Remove this work order?')) return;
  try {
    await api('POST', '/api/workorders/' + encodeURIComponent(currentOrder.id) + '/remove');
    showTab('orders');
  } catch (e) { showError(e); }
}

async function loadAdmin() {
  try {
    const cfg = await api('GET', guildPath('/config'));
    document.getElementById('cfg-admins').value = cfg.admin_role_ids.join(', ');
    document.getElementById('cfg-members').value = cfg.member_role_ids.join(', ');
    document.getElementById('cfg-channel').value = cfg.work_orders_channel_id || '';
    document.getElementById('cfg-timezone').value = cfg.timezone || '';
    showError(null);
  } catch (e) { showError(e); }
  await loadSubsystems();
  document.getElementById('subsystem-rows').innerHTML = subsystems.map((s, i) =>
    '<tr><td>' + esc(s.emoji) + '</td><td>' + esc(s.name) + '</td><td>' + esc(s.display_name) + '</td><td>' +
    '<button onclick="moveSubsystem(' + i + ', -1)">Up</button> ' +
    '<button onclick="moveSubsystem(' + i + ', 1)">Down</button> ' +
    '<button onclick="renameSubsystem(' + s.id + ')">Rename</button> ' +
    '<button class="danger" onclick="deleteSubsystem(' + s.id + ')">Delete</button></td></tr>').join('');
}

async function saveConfig() {
  try {
    await api('PUT', guildPath('/config'), {
      admin_role_ids: splitIds(value('cfg-admins')),
      member_role_ids: splitIds(value('cfg-members')),
      work_orders_channel_id: value('cfg-channel'),
      timezone: value('cfg-timezone') || null,
    });
    document.getElementById('admin-info').textContent = 'Settings saved.';
    loadAdmin();
  } catch (e) { showError(e); }
}

async function addSubsystem() {
  try {
    await api('POST', guildPath('/subsystems'), {
      name: value('sub-name'),
      display_name: value('sub-display'),
      emoji: value('sub-emoji'),
      color: value('sub-color'),
    });
    for (const id of ['sub-name', 'sub-display', 'sub-emoji']) document.getElementById(id).value = '';
    loadAdmin();
  } catch (e) { showError(e); }
}

async function renameSubsystem(subsystemId) {
  const current = subsystems.find(s => s.id === subsystemId);
  const name = prompt('Display name', current ? current.display_name : '');
  if (!name) return;
  try {
    await api('PATCH', '/api/subsystems/' + subsystemId, { display_name: name });
    loadAdmin();
  } catch (e) { showError(e); }
}

async function deleteSubsystem(subsystemId) {
  if (!confirm('Delete this subsystem?')) return;
  try {
    await api('DELETE', '/api/subsystems/' + subsystemId);
    loadAdmin();
  } catch (e) { showError(e); }
}

async function moveSubsystem(index, delta) {
  const target = index + delta;
  if (target < 0 || target >= subsystems.length) return;
  const order = subsystems.map(s => s.id);
  [order[index], order[target]] = [order[target], order[index]];
  try {
    await api('PUT', guildPath('/subsystems/order'), { order });
    loadAdmin();
  } catch (e) { showError(e); }
}

(function init() {
  const id = ident();
  document.getElementById('guild').value = id.guild;
  document.getElementById('user').value = id.user;
  document.getElementById('roles').value = id.roles;
  loadOrders(1);
})();
</script>
</body>
</html>"""
