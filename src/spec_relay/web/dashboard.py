"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Spec Relay</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --pending: #8b949e; --in_progress: #58a6ff; --completed: #3fb950; --blocked: #f85149;
    --accent: #58a6ff;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header select { background: var(--surface); color: var(--text); border: 1px solid var(--border);
                  padding: 6px 12px; border-radius: 6px; font-size: 14px; cursor: pointer; }

  .project-info { background: var(--surface); border: 1px solid var(--border);
                  border-radius: 8px; padding: 16px; margin-bottom: 20px; }
  .project-info h2 { font-size: 16px; margin-bottom: 8px; }
  .project-meta { font-size: 13px; color: var(--text-muted); }

  /* Phase stepper */
  .phases { display: flex; gap: 4px; margin-top: 12px; }
  .phase { flex: 1; text-align: center; font-size: 12px; padding: 4px 0; border-radius: 4px;
           background: var(--bg); color: var(--text-dim); border: 1px solid var(--border); }
  .phase.done { color: var(--completed); border-color: var(--completed); }
  .phase.current { color: var(--accent); border-color: var(--accent); font-weight: 600; }

  .summary { display: flex; gap: 16px; align-items: center; margin-bottom: 24px; flex-wrap: wrap; }
  .stat { display: flex; align-items: center; gap: 6px; font-size: 14px; }
  .stat .dot { width: 10px; height: 10px; border-radius: 50%; display: inline-block; }
  .dot.pending { background: var(--pending); }
  .dot.in_progress { background: var(--in_progress); }
  .dot.completed { background: var(--completed); }
  .dot.blocked { background: var(--blocked); }
  .progress-bar { flex: 1; min-width: 120px; height: 8px; background: var(--surface);
                  border-radius: 4px; overflow: hidden; border: 1px solid var(--border); }
  .progress-bar .fill { height: 100%; background: var(--completed); transition: width 0.3s; }
  .progress-pct { font-size: 13px; color: var(--text-muted); min-width: 40px; }

  .task-list { display: flex; flex-direction: column; gap: 2px; }
  .task-card { background: var(--surface); border: 1px solid var(--border);
               border-radius: 8px; padding: 12px 16px; }
  .task-header { display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.pending { background: rgba(139,148,158,0.15); color: var(--pending); }
  .badge.in_progress { background: rgba(88,166,255,0.15); color: var(--in_progress); }
  .badge.completed { background: rgba(63,185,80,0.15); color: var(--completed); }
  .badge.blocked { background: rgba(248,81,73,0.15); color: var(--blocked); }
  .task-title { font-weight: 600; font-size: 14px; }
  .task-id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .task-details { margin-top: 6px; font-size: 13px; color: var(--text-muted); display: flex;
                  flex-direction: column; gap: 3px; }
  .task-details code { background: var(--bg); padding: 1px 5px; border-radius: 3px; font-size: 12px; }

  .checkpoint { font-size: 13px; color: var(--text-muted); margin-bottom: 16px; }

  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
  .empty h3 { margin-bottom: 8px; }

  .refresh-bar { display: flex; justify-content: space-between; align-items: center;
                 margin-bottom: 16px; font-size: 12px; color: var(--text-dim); }
  .refresh-bar button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                        padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }
  .refresh-bar button:hover { color: var(--text); border-color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Spec Relay</h1>
    <select id="project-picker"><option value="">Loading...</option></select>
  </header>
  <div id="content">
    <div class="empty"><h3>Select a project</h3><p>Choose a project from the dropdown above.</p></div>
  </div>
</div>

<script>
const PHASES = ['requirements', 'design', 'tasks', 'execute'];
const STATUSES = ['pending', 'in_progress', 'blocked', 'completed'];
let currentProject = null;
let refreshTimer = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadProjects() {
  const picker = document.getElementById('project-picker');
  const projects = await fetchJSON('/api/projects');
  if (!projects || projects.length === 0) {
    picker.innerHTML = '<option value="">No projects</option>';
    return;
  }
  picker.innerHTML = projects.map(p => `<option value="${p.id}">${esc(p.name)}</option>`).join('');
  picker.addEventListener('change', () => {
    currentProject = picker.value || null;
    if (currentProject) loadDashboard(currentProject);
  });
  currentProject = projects[0].id;
  loadDashboard(currentProject);
}

function renderPhases(project) {
  const current = PHASES.indexOf(project.current_phase);
  return '<div class="phases">' + PHASES.map((p, i) => {
    let cls = 'phase';
    if (project.status === 'completed' || i < current) cls += ' done';
    else if (i === current) cls += ' current';
    return `<div class="${cls}">${p}</div>`;
  }).join('') + '</div>';
}

async function loadDashboard(projectId) {
  const content = document.getElementById('content');
  const [project, tasks, summary, resume] = await Promise.all([
    fetchJSON(`/api/projects/${projectId}`),
    fetchJSON(`/api/projects/${projectId}/tasks`),
    fetchJSON(`/api/projects/${projectId}/summary`),
    fetchJSON(`/api/projects/${projectId}/resume`),
  ]);

  if (!project) { content.innerHTML = '<div class="empty"><h3>Project not found</h3></div>'; return; }

  let html = `<div class="project-info">
    <h2>${esc(project.name)}</h2>
    <div class="project-meta">${esc(project.description || '')} &middot; ${esc(project.status)}</div>
    ${renderPhases(project)}
  </div>`;

  if (summary) {
    const c = summary.counts;
    html += '<div class="summary">' +
      STATUSES.map(s => `<span class="stat"><span class="dot ${s}"></span> ${c[s]} ${s.replace('_', ' ')}</span>`).join('') +
      `<div class="progress-bar"><div class="fill" style="width:${summary.progress_pct}%"></div></div>
      <span class="progress-pct">${summary.progress_pct}%</span></div>`;
  }

  if (resume && resume.checkpoint) {
    const cp = resume.checkpoint;
    html += `<div class="checkpoint">Last checkpoint: <b>${esc(cp.phase)}</b>
      at ${new Date(cp.created_at).toLocaleString()} (${cp.completed_tasks.length} completed)</div>`;
  }

  html += `<div class="refresh-bar">
    <span>Tasks</span>
    <button onclick="loadDashboard('${projectId}')">Refresh</button>
  </div>`;

  if (!tasks || tasks.length === 0) {
    html += '<div class="empty"><h3>No tasks yet</h3><p>Create tasks with <code>sr task add</code></p></div>';
  } else {
    html += '<div class="task-list">';
    const stack = tasks.slice().reverse();
    while (stack.length) {
      const node = stack.pop();
      html += renderTask(node);
      for (const child of node.children.slice().reverse()) stack.push(child);
    }
    html += '</div>';
  }

  content.innerHTML = html;
}

function renderTask(task) {
  let details = '';
  if (task.description) details += `<div>${esc(task.description)}</div>`;
  details += `<div>Phase: <code>${esc(task.phase)}</code> &middot; Priority: ${task.priority}` +
    (task.assignee_type ? ` &middot; Assignee: <code>${esc(task.assignee_type)}</code>` : '') + '</div>';
  if (task.dependencies.length > 0) {
    details += `<div>Depends on: ${task.dependencies.map(d => `<code>${esc(d)}</code>`).join(', ')}</div>`;
  }
  return `<div class="task-card" style="margin-left:${task.depth * 32}px">
    <div class="task-header">
      <span class="badge ${task.status}">${esc(task.status.replace('_', ' '))}</span>
      <span class="task-title">${esc(task.title)}</span>
      <span class="task-id">${esc(task.id)}</span>
    </div>
    <div class="task-details">${details}</div>
  </div>`;
}

function esc(s) {
  if (!s) return '';
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

function startAutoRefresh() {
  if (refreshTimer) clearInterval(refreshTimer);
  refreshTimer = setInterval(() => {
    if (currentProject) loadDashboard(currentProject);
  }, 30000);
}

loadProjects();
startAutoRefresh();
</script>
</body>
</html>"""
